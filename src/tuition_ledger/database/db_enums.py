'''
Static enums shared by the ORM models, the Pydantic models and the core.
'''
import enum


class ListableEnum(str, enum.Enum):
    """A custom Enum base class that can list all member values."""
    @classmethod
    def get_all_names(cls) -> list[str]:
        return [member.value for member in cls]


class PaymentType(ListableEnum):
    TUITION = "TUITION"
    INSCRIPTION = "INSCRIPTION"
    DISCRETIONARY = "DISCRETIONARY"


class PaymentMethod(ListableEnum):
    CASH = "CASH"
    CARD = "CARD"
    TRANSFER = "TRANSFER"


class MonthStatus(ListableEnum):
    PAID = "paid"
    PARTIAL = "partial"
    UNPAID = "unpaid"
