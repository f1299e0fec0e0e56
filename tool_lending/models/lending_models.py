import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


def _new_id() -> str:
    return uuid.uuid4().hex


class Item(Base):
    __tablename__ = "Items"

    ItemID = Column(String(36), primary_key=True, default=_new_id)
    Name = Column(String(255), nullable=False)
    Description = Column(String(1000))
    Category = Column(String(100))
    IsAvailable = Column(Boolean, nullable=False, default=True)
    QrPayload = Column(String(500))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Loans = relationship("Loan", back_populates="Item")


class Borrower(Base):
    __tablename__ = "Borrowers"

    BorrowerID = Column(String(36), primary_key=True, default=_new_id)
    Name = Column(String(255), nullable=False)
    StudentNumber = Column(String(50), nullable=False)
    Career = Column(String(255))
    Email = Column(String(255))
    Phone = Column(String(50))
    CreatedDate = Column(DateTime, server_default=func.now())

    Loans = relationship("Loan", back_populates="Borrower")


class Loan(Base):
    __tablename__ = "Loans"

    LoanID = Column(String(36), primary_key=True, default=_new_id)
    ItemID = Column(String(36), ForeignKey("Items.ItemID"), nullable=False, index=True)
    BorrowerID = Column(String(36), ForeignKey("Borrowers.BorrowerID"), nullable=False, index=True)
    LoanDate = Column(DateTime, nullable=False)
    DueDate = Column(DateTime, nullable=False)
    Status = Column(String(20), nullable=False, default="active")
    IssuedBy = Column(String(64))
    Notes = Column(String(1000))
    TicketCode = Column(String(20), nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())

    Item = relationship("Item", back_populates="Loans")
    Borrower = relationship("Borrower", back_populates="Loans")


class LoanHistory(Base):
    __tablename__ = "LoanHistory"

    # Keyed by the LoanID of the active record it replaced.
    LoanID = Column(String(36), primary_key=True)
    ItemID = Column(String(36), nullable=False, index=True)
    BorrowerID = Column(String(36), nullable=False, index=True)
    LoanDate = Column(DateTime, nullable=False)
    DueDate = Column(DateTime, nullable=False)
    ReturnDate = Column(DateTime, nullable=False)
    Status = Column(String(20), nullable=False, default="returned")
    IssuedBy = Column(String(64))
    ReturnedBy = Column(String(64))
    Notes = Column(String(1000))
    ReturnNotes = Column(String(1000))
    TicketCode = Column(String(20), nullable=False)
    CreatedDate = Column(DateTime)
    UpdatedDate = Column(DateTime, server_default=func.now())


class OperatorAccount(Base):
    __tablename__ = "OperatorAccounts"

    OperatorID = Column(String(64), primary_key=True, default=_new_id)
    Email = Column(String(255), nullable=False, unique=True)
    Name = Column(String(255), nullable=False)
    Role = Column(String(20), nullable=False, default="Operator")
    PasswordHash = Column(String(128))
    PasswordSalt = Column(String(64))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True, autoincrement=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(String(64), nullable=False)
    Action = Column(String(50), nullable=False)
    Details = Column(String(1000))
    UserID = Column(String(64))
    CreatedAt = Column(DateTime, server_default=func.now())


class SystemSetting(Base):
    __tablename__ = "SystemSettings"

    SettingKey = Column(String(100), primary_key=True)
    SettingValue = Column(Text)
    UpdatedDate = Column(DateTime, server_default=func.now())
    UpdatedBy = Column(String(64))
