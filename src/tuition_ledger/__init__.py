'''
Tuition ledger backend: payment recording, month-by-month balances and
per-school-year receipt numbering, served over FastAPI.
'''
