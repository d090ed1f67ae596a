from typing import Optional, List
from pydantic import BaseModel, Field
from models import (
    NotificationPriority, NotificationType, PaymentStatus, PaymentType,
    PickupPaymentMethod, PrescriptionStatus, UserRole,
)
from datetime import datetime, date

# Inventory schemas
class MedicineCreate(BaseModel):
    name: str
    generic_name: Optional[str] = None
    manufacturer: Optional[str] = None
    category: Optional[str] = None
    batch_number: Optional[str] = None
    quantity: int = Field(default=0, ge=0)
    reorder_level: int = Field(default=10, ge=0)
    unit_price: float = Field(ge=0)
    expiry_date: Optional[date] = None

class MedicineUpdate(BaseModel):
    name: Optional[str] = None
    generic_name: Optional[str] = None
    manufacturer: Optional[str] = None
    category: Optional[str] = None
    batch_number: Optional[str] = None
    reorder_level: Optional[int] = Field(default=None, ge=0)
    unit_price: Optional[float] = Field(default=None, ge=0)
    expiry_date: Optional[date] = None
    is_active: Optional[bool] = None

class MedicineResponse(BaseModel):
    id: int
    name: str
    generic_name: Optional[str] = None
    manufacturer: Optional[str] = None
    category: Optional[str] = None
    batch_number: Optional[str] = None
    quantity: int
    reorder_level: int
    unit_price: float
    expiry_date: Optional[date] = None
    is_active: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True

# Quantities are validated by the ledger so the error taxonomy applies
class StockChange(BaseModel):
    quantity: int

class StockLevel(BaseModel):
    medicine_id: int
    quantity: int

# Prescription schemas
class PrescriptionUpload(BaseModel):
    doctor_name: str
    notes: Optional[str] = None
    file_reference: Optional[str] = None
    customer_id: Optional[int] = None  # staff uploading on behalf of a customer

class PrescribedItem(BaseModel):
    medicine_id: int
    quantity: int
    instructions: Optional[str] = None

class PrescriptionApprove(BaseModel):
    items: List[PrescribedItem]
    discount: float = 0.0
    tax: float = 0.0

class PrescriptionReject(BaseModel):
    reason: str

class PrescriptionItemResponse(BaseModel):
    id: int
    medicine_id: int
    quantity: int
    instructions: Optional[str] = None

    class Config:
        from_attributes = True

class PrescriptionResponse(BaseModel):
    id: int
    prescription_number: str
    customer_id: int
    status: PrescriptionStatus
    doctor_name: str
    notes: Optional[str] = None
    file_reference: Optional[str] = None
    uploaded_at: datetime
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[int] = None
    rejection_reason: Optional[str] = None
    dispensed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    items: List[PrescriptionItemResponse] = []

    class Config:
        from_attributes = True

# Billing schemas
class BillItemResponse(BaseModel):
    id: int
    medicine_id: int
    medicine_name: str
    quantity: int
    unit_price: float
    total_price: float

    class Config:
        from_attributes = True

class BillResponse(BaseModel):
    id: int
    bill_number: str
    prescription_id: Optional[int] = None
    customer_id: Optional[int] = None
    subtotal: float
    discount: float
    tax: float
    total_amount: float
    payment_type: PaymentType
    payment_status: PaymentStatus
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime
    paid_at: Optional[datetime] = None
    updated_at: datetime
    items: List[BillItemResponse] = []

    class Config:
        from_attributes = True

class ManualBillCreate(BaseModel):
    customer_id: Optional[int] = None
    items: List[PrescribedItem]
    discount: float = 0.0
    tax: float = 0.0

class PaymentTypeSelect(BaseModel):
    payment_type: PaymentType

class BillAdjust(BaseModel):
    discount: Optional[float] = None
    tax: Optional[float] = None

class BillCancel(BaseModel):
    reason: Optional[str] = None

class OnlinePaymentRequest(BaseModel):
    card_holder: Optional[str] = None
    card_number: Optional[str] = None
    expiry: Optional[str] = None
    cvv: Optional[str] = None

class PickupPaymentRequest(BaseModel):
    method: PickupPaymentMethod

class PaymentDetailsResponse(BaseModel):
    bill_id: int
    bill_number: str
    total_amount: float
    payment_status: PaymentStatus
    payment_type: PaymentType
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime

class RevenueSummary(BaseModel):
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    revenue: float
    bill_count: int

# Notification schemas
class NotificationResponse(BaseModel):
    id: int
    recipient_id: Optional[int] = None
    recipient_role: Optional[UserRole] = None
    notification_type: NotificationType
    priority: NotificationPriority
    title: str
    message: str
    is_read: bool
    reference_type: Optional[str] = None
    reference_id: Optional[int] = None
    created_at: datetime
    read_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class MarkReadByContent(BaseModel):
    notification_type: NotificationType
    keyword: str

class BulkNotificationIds(BaseModel):
    notification_ids: List[int]

class BulkFailure(BaseModel):
    id: int
    error: str
    detail: str

class BulkResult(BaseModel):
    succeeded: List[int]
    failed: List[BulkFailure]

class UnreadCount(BaseModel):
    unread_count: int

class MarkAllReadResult(BaseModel):
    updated: int

class NotificationEventCreate(BaseModel):
    """Event from another subsystem, e.g. USER_REGISTRATION from the identity provider"""
    notification_type: NotificationType
    recipient_id: Optional[int] = None
    recipient_role: Optional[UserRole] = None
    priority: Optional[NotificationPriority] = None
    context: dict = {}
    reference_type: Optional[str] = None
    reference_id: Optional[int] = None

# Scheduled task schemas
class AlertSnapshot(BaseModel):
    low_stock: List[MedicineResponse]
    expiring: List[MedicineResponse]
    overdue_bills: List[BillResponse]
    counts: dict
    horizon_days: int
    max_age_days: int
    generated_at: datetime

class TaskResult(BaseModel):
    task: str
    processed: int
