"""Inventory ledger endpoints: medicine catalog and stock movements"""
from fastapi import APIRouter, Depends, Query
from sqlmodel import Session
from typing import List, Optional

from database import get_session
from models import Actor
from dependencies import get_current_user, require_staff
from schemas import MedicineCreate, MedicineResponse, MedicineUpdate, StockChange, StockLevel
from services import inventory_ledger

router = APIRouter(prefix="/api/inventory", tags=["Inventory"])


# ==================== CATALOG ====================

@router.post("/medicines", response_model=MedicineResponse, status_code=201)
def create_medicine(
    medicine: MedicineCreate,
    db: Session = Depends(get_session),
    current_user: Actor = Depends(require_staff)
):
    """Add a medicine to the catalog (Staff only)"""
    return inventory_ledger.create_medicine(db, **medicine.model_dump())


@router.get("/medicines", response_model=List[MedicineResponse])
def list_medicines(
    search: Optional[str] = None,
    active_only: bool = True,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_session),
    current_user: Actor = Depends(get_current_user)
):
    return inventory_ledger.list_medicines(db, search=search, active_only=active_only, skip=skip, limit=limit)


@router.get("/medicines/{medicine_id}", response_model=MedicineResponse)
def get_medicine(
    medicine_id: int,
    db: Session = Depends(get_session),
    current_user: Actor = Depends(get_current_user)
):
    return inventory_ledger.get_medicine(db, medicine_id)


@router.patch("/medicines/{medicine_id}", response_model=MedicineResponse)
def update_medicine(
    medicine_id: int,
    changes: MedicineUpdate,
    db: Session = Depends(get_session),
    current_user: Actor = Depends(require_staff)
):
    """Update catalog fields. Stock only moves through deduct/restock."""
    return inventory_ledger.update_medicine(db, medicine_id, **changes.model_dump(exclude_unset=True))


# ==================== STOCK ====================

@router.post("/medicines/{medicine_id}/restock", response_model=StockLevel)
def restock_medicine(
    medicine_id: int,
    change: StockChange,
    db: Session = Depends(get_session),
    current_user: Actor = Depends(require_staff)
):
    quantity = inventory_ledger.restock(db, medicine_id, change.quantity)
    return StockLevel(medicine_id=medicine_id, quantity=quantity)


@router.post("/medicines/{medicine_id}/deduct", response_model=StockLevel)
def deduct_medicine(
    medicine_id: int,
    change: StockChange,
    db: Session = Depends(get_session),
    current_user: Actor = Depends(require_staff)
):
    """Manual stock write-off, e.g. damaged or expired units"""
    quantity = inventory_ledger.deduct(db, medicine_id, change.quantity)
    return StockLevel(medicine_id=medicine_id, quantity=quantity)


@router.get("/low-stock", response_model=List[MedicineResponse])
def low_stock(
    db: Session = Depends(get_session),
    current_user: Actor = Depends(require_staff)
):
    return inventory_ledger.query_below_threshold(db)


@router.get("/expiring", response_model=List[MedicineResponse])
def expiring(
    days: int = Query(30, ge=0),
    include_expired: bool = False,
    db: Session = Depends(get_session),
    current_user: Actor = Depends(require_staff)
):
    return inventory_ledger.query_expiring_within(db, days, include_expired=include_expired)
