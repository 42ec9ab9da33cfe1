# backend/app/models/__init__.py
from .masters import Patient, Store, Product, Prescription, PrescriptionItem
from .pharmacy_inventory import (
    InventoryLedger,
    InvNumberSeries,
    PurchaseOrder,
    PurchaseOrderItem,
    GoodsReceipt,
    GoodsReceiptItem,
)
from .billing import Invoice, InvoiceItem, CreditLedger
from .pharmacy_sales import (
    PharmacySale,
    PharmacySaleItem,
    PharmacyReturn,
    PharmacyReturnItem,
)
from .audit import AuditLog

__all__ = [
    "Patient",
    "Store",
    "Product",
    "Prescription",
    "PrescriptionItem",
    "InventoryLedger",
    "InvNumberSeries",
    "PurchaseOrder",
    "PurchaseOrderItem",
    "GoodsReceipt",
    "GoodsReceiptItem",
    "Invoice",
    "InvoiceItem",
    "CreditLedger",
    "PharmacySale",
    "PharmacySaleItem",
    "PharmacyReturn",
    "PharmacyReturnItem",
    "AuditLog",
]
