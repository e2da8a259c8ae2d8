from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, Date, DateTime, Enum, ForeignKeyConstraint, Index, Integer, Numeric, PrimaryKeyConstraint, SmallInteger, Text, UniqueConstraint, Uuid, func, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
import datetime
import decimal
import uuid

from .db_enums import PaymentMethod, PaymentType

class Base(DeclarativeBase):
    pass


class SchoolYears(Base):
    __tablename__ = 'school_years'
    __table_args__ = (
        CheckConstraint('end_date >= start_date', name='school_years_valid_range'),
        PrimaryKeyConstraint('id', name='school_years_pkey'),
        UniqueConstraint('name', name='school_years_name_key')
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text)
    start_date: Mapped[datetime.date] = mapped_column(Date)
    end_date: Mapped[datetime.date] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(Boolean, server_default=text('false'))

    grades: Mapped[list['Grades']] = relationship('Grades', back_populates='school_year')
    receipt_counter: Mapped[Optional['ReceiptCounters']] = relationship('ReceiptCounters', uselist=False, back_populates='school_year')


class Grades(Base):
    __tablename__ = 'grades'
    __table_args__ = (
        ForeignKeyConstraint(['school_year_id'], ['school_years.id'], name='grades_school_year_id_fkey'),
        PrimaryKeyConstraint('id', name='grades_pkey')
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text)
    # Not constrained: a bad value must surface as a DataIntegrityError, not be hidden
    tuition_amount: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2))
    school_year_id: Mapped[uuid.UUID] = mapped_column(Uuid)

    school_year: Mapped['SchoolYears'] = relationship('SchoolYears', back_populates='grades')
    students: Mapped[list['Students']] = relationship('Students', back_populates='grade')


class Students(Base):
    __tablename__ = 'students'
    __table_args__ = (
        CheckConstraint('balance >= 0', name='students_balance_non_negative'),
        ForeignKeyConstraint(['grade_id'], ['grades.id'], name='students_grade_id_fkey'),
        PrimaryKeyConstraint('id', name='students_pkey')
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text)
    grade_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    is_active: Mapped[bool] = mapped_column(Boolean, server_default=text('true'))
    # Cached outstanding tuition of the active school year; non-tuition payments never touch it
    balance: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2), server_default=text('0'))

    grade: Mapped['Grades'] = relationship('Grades', back_populates='students')
    payments: Mapped[list['Payments']] = relationship('Payments', back_populates='student')


class Payments(Base):
    __tablename__ = 'payments'
    __table_args__ = (
        CheckConstraint('amount > 0', name='payments_amount_positive'),
        CheckConstraint('for_month IS NULL OR (for_month >= 1 AND for_month <= 12)', name='payments_valid_month'),
        ForeignKeyConstraint(['student_id'], ['students.id'], name='payments_student_id_fkey'),
        ForeignKeyConstraint(['school_year_id'], ['school_years.id'], name='payments_school_year_id_fkey'),
        PrimaryKeyConstraint('id', name='payments_pkey'),
        UniqueConstraint('school_year_id', 'receipt_number', name='payments_school_year_receipt_key'),
        Index('idx_payments_student_school_year', 'student_id', 'school_year_id'),
        Index('idx_payments_transaction_id', 'transaction_id')
    )
    __mapper_args__ = {'eager_defaults': True}

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    school_year_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    amount: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2))
    payment_type: Mapped[str] = mapped_column(Enum(*PaymentType.get_all_names(), name='payment_type_enum'), server_default=text("'TUITION'"))
    payment_method: Mapped[str] = mapped_column(Enum(*PaymentMethod.get_all_names(), name='payment_method_enum'))
    receipt_number: Mapped[str] = mapped_column(Text)
    # Numeric part of receipt_number; NULL on legacy rows
    receipt_sequence: Mapped[Optional[int]] = mapped_column(Integer)
    transaction_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    clerk_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    is_partial: Mapped[bool] = mapped_column(Boolean, server_default=text('false'))
    payment_date: Mapped[datetime.datetime] = mapped_column(DateTime(True), server_default=func.now())
    for_month: Mapped[Optional[int]] = mapped_column(SmallInteger)
    # NULL on legacy rows written before payments carried a year
    for_year: Mapped[Optional[int]] = mapped_column(Integer)
    description: Mapped[Optional[str]] = mapped_column(Text)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    student: Mapped['Students'] = relationship('Students', back_populates='payments')
    school_year: Mapped['SchoolYears'] = relationship('SchoolYears')


class ReceiptCounters(Base):
    __tablename__ = 'receipt_counters'
    __table_args__ = (
        CheckConstraint('last_number >= 0', name='receipt_counters_non_negative'),
        ForeignKeyConstraint(['school_year_id'], ['school_years.id'], name='receipt_counters_school_year_id_fkey'),
        PrimaryKeyConstraint('id', name='receipt_counters_pkey'),
        UniqueConstraint('school_year_id', name='receipt_counters_school_year_id_key')
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    school_year_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    last_number: Mapped[int] = mapped_column(Integer, server_default=text('0'))

    school_year: Mapped['SchoolYears'] = relationship('SchoolYears', back_populates='receipt_counter')
