from typing import Optional, List
from datetime import datetime, date
from dataclasses import dataclass
from sqlmodel import Field, SQLModel, Relationship
from enum import Enum

class UserRole(str, Enum):
    ADMIN = "admin"
    PHARMACIST = "pharmacist"
    CUSTOMER = "customer"

STAFF_ROLES = (UserRole.ADMIN, UserRole.PHARMACIST)

@dataclass(frozen=True)
class Actor:
    """Acting user as supplied by the identity provider. Not persisted."""
    user_id: int
    role: UserRole
    name: Optional[str] = None

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


# ==================== INVENTORY MODELS ====================

class Medicine(SQLModel, table=True):
    """Medicine stock record"""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    generic_name: Optional[str] = None
    manufacturer: Optional[str] = None
    category: Optional[str] = None
    batch_number: Optional[str] = Field(default=None, index=True)
    quantity: int = Field(default=0, ge=0)
    reorder_level: int = Field(default=10, ge=0)
    unit_price: float = Field(default=0)
    expiry_date: Optional[date] = Field(default=None, index=True)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


# ==================== PRESCRIPTION MODELS ====================

class PrescriptionStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    DISPENSED = "DISPENSED"
    COMPLETED = "COMPLETED"

class Prescription(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    prescription_number: str = Field(unique=True, index=True)
    customer_id: int = Field(index=True)
    status: PrescriptionStatus = Field(default=PrescriptionStatus.PENDING, index=True)
    doctor_name: str
    notes: Optional[str] = None
    file_reference: Optional[str] = None  # Opaque handle from the upload service
    uploaded_at: datetime = Field(default_factory=datetime.utcnow)
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[int] = None
    rejection_reason: Optional[str] = None
    dispensed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    items: List["PrescriptionItem"] = Relationship(back_populates="prescription")

class PrescriptionItem(SQLModel, table=True):
    """Medicine line approved on a prescription"""
    id: Optional[int] = Field(default=None, primary_key=True)
    prescription_id: int = Field(foreign_key="prescription.id", index=True)
    medicine_id: int = Field(foreign_key="medicine.id")
    quantity: int
    instructions: Optional[str] = None

    prescription: Optional[Prescription] = Relationship(back_populates="items")


# ==================== BILLING MODELS ====================

class PaymentType(str, Enum):
    UNSET = "UNSET"
    ONLINE = "ONLINE"
    PAY_ON_PICKUP = "PAY_ON_PICKUP"

class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    PAID = "PAID"
    CANCELLED = "CANCELLED"

class PickupPaymentMethod(str, Enum):
    CASH = "CASH"
    CARD = "CARD"
    BANK_TRANSFER = "BANK_TRANSFER"
    OTHER = "OTHER"

class Bill(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    bill_number: str = Field(unique=True, index=True)
    prescription_id: Optional[int] = Field(default=None, foreign_key="prescription.id", index=True)
    customer_id: Optional[int] = Field(default=None, index=True)

    # Amounts
    subtotal: float = Field(default=0.0)
    discount: float = Field(default=0.0)
    tax: float = Field(default=0.0)
    total_amount: float = Field(default=0.0)

    # Payment
    payment_type: PaymentType = Field(default=PaymentType.UNSET)
    payment_status: PaymentStatus = Field(default=PaymentStatus.PENDING, index=True)
    payment_method: Optional[str] = None  # ONLINE card payment or a PickupPaymentMethod
    transaction_id: Optional[str] = None
    cancellation_reason: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    paid_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    items: List["BillItem"] = Relationship(back_populates="bill")

class BillItem(SQLModel, table=True):
    """Individual line items in a bill"""
    id: Optional[int] = Field(default=None, primary_key=True)
    bill_id: int = Field(foreign_key="bill.id", index=True)
    medicine_id: int = Field(foreign_key="medicine.id")
    medicine_name: str
    quantity: int
    unit_price: float
    total_price: float

    bill: Optional[Bill] = Relationship(back_populates="items")


# ==================== NOTIFICATION MODELS ====================

class NotificationType(str, Enum):
    LOW_STOCK = "LOW_STOCK"
    EXPIRY_ALERT = "EXPIRY_ALERT"
    PRESCRIPTION_UPLOADED = "PRESCRIPTION_UPLOADED"
    PRESCRIPTION_APPROVED = "PRESCRIPTION_APPROVED"
    PRESCRIPTION_REJECTED = "PRESCRIPTION_REJECTED"
    BILL_GENERATED = "BILL_GENERATED"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    SYSTEM_ALERT = "SYSTEM_ALERT"
    USER_REGISTRATION = "USER_REGISTRATION"

class NotificationPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

class Notification(SQLModel, table=True):
    """In-app notification. Addressed to one user or to a whole role."""
    id: Optional[int] = Field(default=None, primary_key=True)
    recipient_id: Optional[int] = Field(default=None, index=True)
    recipient_role: Optional[UserRole] = Field(default=None, index=True)
    notification_type: NotificationType = Field(index=True)
    priority: NotificationPriority = Field(default=NotificationPriority.MEDIUM)
    title: str
    message: str
    is_read: bool = Field(default=False, index=True)

    # Reference
    reference_type: Optional[str] = None  # medicine, prescription, bill, user
    reference_id: Optional[int] = None

    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    read_at: Optional[datetime] = None

class AlertDedupe(SQLModel, table=True):
    """Durable debounce marker for alert evaluator runs"""
    id: Optional[int] = Field(default=None, primary_key=True)
    dedupe_key: str = Field(unique=True, index=True)  # <type>:<entity>:<id>:<day>
    alert_type: NotificationType = Field(index=True)
    entity_type: str
    entity_id: int = Field(index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
