"""Notification title/message templates for pharmacy domain events"""
from datetime import date
from typing import Optional, Tuple


def _money(amount: float) -> str:
    return f"Rs. {amount:.2f}"


def render_prescription_uploaded(prescription_number: str, doctor_name: str) -> Tuple[str, str]:
    return (
        "New Prescription Uploaded",
        f"Prescription {prescription_number} from Dr. {doctor_name} is waiting for review.",
    )


def render_prescription_approved(prescription_number: str) -> Tuple[str, str]:
    return (
        "Prescription Approved",
        f"Your prescription {prescription_number} has been approved by the pharmacist. "
        "Your bill is ready.",
    )


def render_prescription_rejected(prescription_number: str, reason: Optional[str]) -> Tuple[str, str]:
    reason_text = f"Reason: {reason}" if reason else "Please check your prescription details."
    return (
        "Prescription Rejected",
        f"Your prescription {prescription_number} could not be approved. {reason_text}",
    )


def render_bill_generated(bill_number: str, amount: float, prescription_number: Optional[str] = None) -> Tuple[str, str]:
    if prescription_number:
        message = f"Bill {bill_number} for prescription {prescription_number} is ready. Amount: {_money(amount)}"
    else:
        message = f"Bill {bill_number} is ready. Amount: {_money(amount)}"
    return "New Bill Generated", message


def render_payment_received(bill_number: str, amount: float, method: str) -> Tuple[str, str]:
    return (
        "Payment Successful",
        f"Payment of {_money(amount)} for bill {bill_number} completed via {method}.",
    )


def render_low_stock(medicine_name: str, quantity: int, reorder_level: int) -> Tuple[str, str]:
    if quantity == 0:
        return (
            "Out of Stock",
            f"{medicine_name} is out of stock. Reorder level: {reorder_level}",
        )
    return (
        "Low Stock Alert",
        f"{medicine_name} is running low. Current stock: {quantity}, Reorder level: {reorder_level}",
    )


def render_expiry_alert(medicine_name: str, expiry_date: date, batch_number: Optional[str], expired: bool) -> Tuple[str, str]:
    batch_info = f" (Batch: {batch_number})" if batch_number else ""
    if expired:
        return (
            "Medicine Expired",
            f"{medicine_name}{batch_info} expired on {expiry_date.isoformat()}",
        )
    return (
        "Medicine Expiry Alert",
        f"{medicine_name}{batch_info} is expiring on {expiry_date.isoformat()}",
    )


def render_bill_expired(bill_number: str, age_days: int) -> Tuple[str, str]:
    return (
        "Bill Expired",
        f"Bill {bill_number} stayed unpaid for {age_days} days and was cancelled.",
    )


def render_user_registration(user_name: str, role: str) -> Tuple[str, str]:
    return (
        "New User Registered",
        f"{user_name} registered as {role}.",
    )
