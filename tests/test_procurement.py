"""Purchase order lifecycle, goods receipts and the PO roll-up across receipts."""

from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest

from app.core.errors import ConflictError, DomainRuleError, InvalidStateError, NotFoundError
from app.models.audit import AuditLog
from app.models.pharmacy_inventory import GRNStatus, InventoryLedger, LedgerTxnType, POStatus
from app.models.pharmacy_sales import SaleStatus
from app.schemas.pharmacy_inventory import GRNCreate, GRNItemIn, POItemIn, PurchaseOrderCreate, PurchaseOrderUpdate
from app.schemas.pharmacy_sales import OPSaleCreate, SaleItemIn
from app.services.inventory import batch_balance
from app.services.inventory_grn import create_goods_receipt, derive_grn_status, get_goods_receipt
from app.services.inventory_po_service import (
    approve_purchase_order,
    cancel_purchase_order,
    create_purchase_order,
    delete_purchase_order,
    get_purchase_order,
    send_purchase_order,
    update_purchase_order,
)
from app.services.pharmacy import create_op_sale
from app.utils.timezone import today_utc

from tests.conftest import TENANT, USER


def _po_payload(store, *lines):
    return PurchaseOrderCreate(
        store_id=store.id,
        vendor_id=9,
        items=[POItemIn(product_id=p.id, quantity_ordered=Decimal(str(q)), unit_cost=Decimal(c))
               for p, q, c in lines],
    )


def _grn_payload(po, store, *lines, received_date=None):
    return GRNCreate(
        purchase_order_id=po.id,
        store_id=store.id,
        vendor_invoice_number="VINV-1",
        received_date=received_date,
        items=[
            GRNItemIn(
                product_id=p.id,
                batch_number=batch,
                expiry_date=date(2028, 3, 31),
                quantity_received=Decimal(str(received)),
                quantity_rejected=Decimal(str(rejected)),
                unit_cost=Decimal("5.00"),
            )
            for p, batch, received, rejected in lines
        ],
    )


@pytest.fixture
def approved_po(db, store, make_product):
    def _make(qty=100, products=None):
        products = products or [make_product()]
        po = create_purchase_order(db, TENANT, USER, _po_payload(store, *[(p, qty, "5.00") for p in products]))
        po = approve_purchase_order(db, TENANT, USER, po.id, version=1)
        return po, products
    return _make


class TestPurchaseOrders:

    def test_create_draft(self, db, store, make_product):
        a = make_product()
        b = make_product()

        po = create_purchase_order(db, TENANT, USER, _po_payload(store, (a, 10, "2.50"), (b, 3, "10.00")))

        assert po.status == POStatus.DRAFT
        assert po.po_number == f"PO-{today_utc().year}-00001"
        assert po.grand_total == Decimal("55.00")
        assert [li.line_total for li in po.items] == [Decimal("25.00"), Decimal("30.00")]
        assert po.version == 1

    def test_needs_lines(self, db, store):
        with pytest.raises(DomainRuleError) as exc:
            create_purchase_order(db, TENANT, USER, _po_payload(store))
        assert exc.value.code == "NO_ITEMS"

    def test_duplicate_product_line(self, db, store, make_product):
        a = make_product()
        with pytest.raises(DomainRuleError) as exc:
            create_purchase_order(db, TENANT, USER, _po_payload(store, (a, 1, "1"), (a, 2, "1")))
        assert exc.value.code == "DUPLICATE_PO_LINE"

    def test_unknown_product(self, db, store):
        ghost = SimpleNamespace(id=4040)
        with pytest.raises(NotFoundError) as exc:
            create_purchase_order(db, TENANT, USER, _po_payload(store, (ghost, 1, "1")))
        assert exc.value.code == "PRODUCT_NOT_FOUND"

    def test_approve_then_send(self, db, store, make_product):
        po = create_purchase_order(db, TENANT, USER, _po_payload(store, (make_product(), 5, "1.00")))

        po = approve_purchase_order(db, TENANT, "manager-1", po.id, version=1)
        assert po.status == POStatus.APPROVED
        assert po.approved_by == "manager-1"
        assert po.version == 2

        po = send_purchase_order(db, TENANT, USER, po.id, version=2)
        assert po.status == POStatus.SENT
        assert po.version == 3

        actions = [a.action for a in db.query(AuditLog).filter(
            AuditLog.entity_type == "PURCHASE_ORDER").order_by(AuditLog.id)]
        assert actions == ["CREATE", "APPROVE", "SEND"]

    def test_draft_cannot_be_sent(self, db, store, make_product):
        po = create_purchase_order(db, TENANT, USER, _po_payload(store, (make_product(), 5, "1.00")))
        with pytest.raises(InvalidStateError) as exc:
            send_purchase_order(db, TENANT, USER, po.id, version=1)
        assert exc.value.code == "PO_INVALID_STATUS"

    def test_stale_version(self, db, store, make_product):
        po = create_purchase_order(db, TENANT, USER, _po_payload(store, (make_product(), 5, "1.00")))
        with pytest.raises(ConflictError) as exc:
            approve_purchase_order(db, TENANT, USER, po.id, version=4)
        assert exc.value.code == "VERSION_CONFLICT"
        assert get_purchase_order(db, TENANT, po.id).status == POStatus.DRAFT

    def test_cancel_draft(self, db, store, make_product):
        po = create_purchase_order(db, TENANT, USER, _po_payload(store, (make_product(), 5, "1.00")))
        po = cancel_purchase_order(db, TENANT, USER, po.id, version=1)
        assert po.status == POStatus.CANCELLED

    def test_cannot_cancel_once_goods_arrived(self, db, store, approved_po):
        po, [product] = approved_po()
        # a fully rejected delivery leaves the PO APPROVED but still on record
        create_goods_receipt(db, TENANT, USER, _grn_payload(po, store, (product, "B1", 10, 10)))

        with pytest.raises(InvalidStateError) as exc:
            cancel_purchase_order(db, TENANT, USER, po.id, version=2)
        assert exc.value.code == "PO_HAS_GRN"

    def test_missing_po(self, db):
        with pytest.raises(NotFoundError) as exc:
            get_purchase_order(db, TENANT, 777)
        assert exc.value.code == "PO_NOT_FOUND"


class TestEditAndDelete:

    def test_header_edit_keeps_lines(self, db, store, make_product):
        po = create_purchase_order(db, TENANT, USER, _po_payload(store, (make_product(), 4, "2.50")))

        po = update_purchase_order(db, TENANT, "buyer-2", po.id, PurchaseOrderUpdate(
            version=1, notes="call before delivery", expected_date=date(2026, 1, 15)))

        assert po.version == 2
        assert po.notes == "call before delivery"
        assert po.expected_date == date(2026, 1, 15)
        assert po.vendor_id == 9
        assert po.updated_by == "buyer-2"
        assert po.grand_total == Decimal("10.00")

    def test_lines_are_replaced(self, db, store, make_product):
        a, b = make_product(), make_product()
        po = create_purchase_order(db, TENANT, USER, _po_payload(store, (a, 4, "2.50"), (b, 1, "1.00")))

        po = update_purchase_order(db, TENANT, USER, po.id, PurchaseOrderUpdate(
            version=1,
            items=[POItemIn(product_id=a.id, quantity_ordered=Decimal("6"), unit_cost=Decimal("3.00"))],
        ))

        assert [(li.product_id, li.quantity_ordered) for li in po.items] == [(a.id, Decimal("6"))]
        assert po.grand_total == Decimal("18.00")
        audit = db.query(AuditLog).filter(AuditLog.action == "UPDATE").one()
        assert audit.old_value == {"grand_total": "11.00"}

    def test_only_draft_is_editable(self, db, store, approved_po):
        po, _ = approved_po()
        with pytest.raises(InvalidStateError) as exc:
            update_purchase_order(db, TENANT, USER, po.id, PurchaseOrderUpdate(version=2, notes="late"))
        assert exc.value.code == "PO_NOT_DRAFT"

    def test_edit_with_stale_version(self, db, store, make_product):
        po = create_purchase_order(db, TENANT, USER, _po_payload(store, (make_product(), 1, "1")))
        with pytest.raises(ConflictError):
            update_purchase_order(db, TENANT, USER, po.id, PurchaseOrderUpdate(version=3, notes="x"))
        assert get_purchase_order(db, TENANT, po.id).notes == ""

    def test_edit_rejects_duplicate_lines(self, db, store, make_product):
        a = make_product()
        po = create_purchase_order(db, TENANT, USER, _po_payload(store, (a, 1, "1")))
        line = POItemIn(product_id=a.id, quantity_ordered=Decimal("1"))
        with pytest.raises(DomainRuleError) as exc:
            update_purchase_order(db, TENANT, USER, po.id, PurchaseOrderUpdate(version=1, items=[line, line]))
        assert exc.value.code == "DUPLICATE_PO_LINE"

    def test_soft_delete_hides_the_order(self, db, store, make_product):
        po = create_purchase_order(db, TENANT, USER, _po_payload(store, (make_product(), 1, "1")))

        assert delete_purchase_order(db, TENANT, USER, po.id, version=1) == {"success": True}

        with pytest.raises(NotFoundError) as exc:
            get_purchase_order(db, TENANT, po.id)
        assert exc.value.code == "PO_NOT_FOUND"
        audit = db.query(AuditLog).filter(AuditLog.action == "DELETE").one()
        assert audit.old_value == {"status": "DRAFT"}

    def test_cancelled_order_can_be_deleted(self, db, store, make_product):
        po = create_purchase_order(db, TENANT, USER, _po_payload(store, (make_product(), 1, "1")))
        cancel_purchase_order(db, TENANT, USER, po.id, version=1)

        delete_purchase_order(db, TENANT, USER, po.id, version=2)

        with pytest.raises(NotFoundError):
            get_purchase_order(db, TENANT, po.id)

    def test_approved_order_cannot_be_deleted(self, db, approved_po):
        po, _ = approved_po()
        with pytest.raises(InvalidStateError) as exc:
            delete_purchase_order(db, TENANT, USER, po.id, version=2)
        assert exc.value.code == "PO_INVALID_STATUS"

    def test_delete_with_stale_version(self, db, store, make_product):
        po = create_purchase_order(db, TENANT, USER, _po_payload(store, (make_product(), 1, "1")))
        with pytest.raises(ConflictError):
            delete_purchase_order(db, TENANT, USER, po.id, version=5)
        assert get_purchase_order(db, TENANT, po.id).is_deleted == 0


class TestGoodsReceipt:

    def test_accepted_quantity_hits_the_ledger(self, db, store, approved_po):
        po, [product] = approved_po()

        grn = create_goods_receipt(db, TENANT, USER, _grn_payload(po, store, (product, "B1", 50, 10)))

        assert grn.grn_number == f"GRN-{today_utc().year}-00001"
        assert grn.status == GRNStatus.PARTIAL
        [item] = grn.items
        assert item.quantity_accepted == Decimal("40")
        entry = db.query(InventoryLedger).filter(
            InventoryLedger.transaction_type == LedgerTxnType.GRN_IN).one()
        assert entry.quantity_change == Decimal("40")
        assert entry.reference_number == grn.grn_number
        assert entry.notes == f"GRN {grn.grn_number} from PO {po.po_number}"
        assert batch_balance(db, TENANT, store.id, product.id, "B1") == Decimal("40")

    def test_fully_rejected_line_writes_no_ledger(self, db, store, approved_po):
        po, [product] = approved_po()

        grn = create_goods_receipt(db, TENANT, USER, _grn_payload(po, store, (product, "B1", 10, 10)))

        assert grn.status == GRNStatus.REJECTED
        assert db.query(InventoryLedger).count() == 0
        assert get_purchase_order(db, TENANT, po.id).status == POStatus.APPROVED

    def test_roll_up_across_receipts(self, db, store, approved_po):
        po, [product] = approved_po(qty=100)

        create_goods_receipt(db, TENANT, USER, _grn_payload(po, store, (product, "B1", 40, 0)))
        po = get_purchase_order(db, TENANT, po.id)
        assert po.status == POStatus.PARTIAL
        assert po.version == 3

        create_goods_receipt(db, TENANT, USER, _grn_payload(po, store, (product, "B2", 60, 0)))
        po = get_purchase_order(db, TENANT, po.id)
        assert po.status == POStatus.RECEIVED
        assert po.version == 4

        changes = db.query(AuditLog).filter(AuditLog.action == "STATUS_CHANGE").all()
        assert [c.new_value["status"] for c in changes] == ["PARTIAL", "RECEIVED"]

    def test_rejections_do_not_count_toward_roll_up(self, db, store, approved_po):
        po, [product] = approved_po(qty=100)

        create_goods_receipt(db, TENANT, USER, _grn_payload(po, store, (product, "B1", 100, 1)))

        assert get_purchase_order(db, TENANT, po.id).status == POStatus.PARTIAL

    def test_every_line_must_be_covered(self, db, store, make_product, approved_po):
        a, b = make_product(), make_product()
        po, _ = approved_po(qty=10, products=[a, b])

        create_goods_receipt(db, TENANT, USER, _grn_payload(po, store, (a, "A1", 10, 0)))
        assert get_purchase_order(db, TENANT, po.id).status == POStatus.PARTIAL

        create_goods_receipt(db, TENANT, USER, _grn_payload(po, store, (b, "X1", 10, 0)))
        assert get_purchase_order(db, TENANT, po.id).status == POStatus.RECEIVED

    def test_draft_po_cannot_receive(self, db, store, make_product):
        product = make_product()
        po = create_purchase_order(db, TENANT, USER, _po_payload(store, (product, 10, "1")))

        with pytest.raises(InvalidStateError) as exc:
            create_goods_receipt(db, TENANT, USER, _grn_payload(po, store, (product, "B1", 10, 0)))
        assert exc.value.code == "PO_INVALID_STATUS"

    def test_received_po_cannot_receive_again(self, db, store, approved_po):
        po, [product] = approved_po(qty=10)
        create_goods_receipt(db, TENANT, USER, _grn_payload(po, store, (product, "B1", 10, 0)))

        with pytest.raises(InvalidStateError) as exc:
            create_goods_receipt(db, TENANT, USER, _grn_payload(po, store, (product, "B2", 1, 0)))
        assert exc.value.code == "PO_INVALID_STATUS"

    def test_missing_po(self, db, store, make_product):
        product = make_product()
        ghost = SimpleNamespace(id=555)
        with pytest.raises(NotFoundError) as exc:
            create_goods_receipt(db, TENANT, USER, _grn_payload(ghost, store, (product, "B1", 1, 0)))
        assert exc.value.code == "PO_NOT_FOUND"

    def test_deleted_po_cannot_receive(self, db, store, make_product):
        product = make_product()
        po = create_purchase_order(db, TENANT, USER, _po_payload(store, (product, 10, "1")))
        delete_purchase_order(db, TENANT, USER, po.id, version=1)

        with pytest.raises(NotFoundError) as exc:
            create_goods_receipt(db, TENANT, USER, _grn_payload(po, store, (product, "B1", 10, 0)))
        assert exc.value.code == "PO_NOT_FOUND"
        assert db.query(InventoryLedger).count() == 0

    def test_unknown_store(self, db, store, approved_po):
        po, [product] = approved_po()
        elsewhere = SimpleNamespace(id=9999)

        with pytest.raises(NotFoundError) as exc:
            create_goods_receipt(db, TENANT, USER, _grn_payload(po, elsewhere, (product, "B1", 10, 0)))
        assert exc.value.code == "STORE_NOT_FOUND"
        assert db.query(InventoryLedger).count() == 0

    def test_unknown_product(self, db, store, approved_po):
        po, [product] = approved_po()
        ghost = SimpleNamespace(id=8888)

        with pytest.raises(NotFoundError) as exc:
            create_goods_receipt(db, TENANT, USER,
                                 _grn_payload(po, store, (product, "B1", 10, 0), (ghost, "G1", 1, 0)))
        assert exc.value.code == "PRODUCT_NOT_FOUND"
        assert db.query(InventoryLedger).count() == 0
        assert get_purchase_order(db, TENANT, po.id).status == POStatus.APPROVED

    def test_rejected_above_received_rejected_by_service(self, db, store, approved_po):
        po, [product] = approved_po()
        payload = SimpleNamespace(
            purchase_order_id=po.id,
            store_id=store.id,
            vendor_invoice_number=None,
            received_date=None,
            notes=None,
            items=[SimpleNamespace(
                product_id=product.id,
                batch_number="B1",
                manufacturing_date=None,
                expiry_date=date(2028, 1, 1),
                quantity_received=Decimal("5"),
                quantity_rejected=Decimal("6"),
                unit_cost=Decimal("1"),
            )],
        )
        with pytest.raises(DomainRuleError) as exc:
            create_goods_receipt(db, TENANT, USER, payload)
        assert exc.value.code == "INVALID_QUANTITY"
        assert db.query(InventoryLedger).count() == 0

    def test_rejected_above_received_rejected_by_schema(self):
        with pytest.raises(ValueError):
            GRNItemIn(
                product_id=1,
                batch_number="B1",
                expiry_date=date(2028, 1, 1),
                quantity_received=Decimal("5"),
                quantity_rejected=Decimal("6"),
            )

    def test_grn_number_uses_received_year(self, db, store, approved_po):
        po, [product] = approved_po()
        grn = create_goods_receipt(db, TENANT, USER,
                                   _grn_payload(po, store, (product, "B1", 1, 0), received_date=date(2024, 3, 1)))
        assert grn.grn_number == "GRN-2024-00001"
        assert get_goods_receipt(db, TENANT, grn.id).received_date == date(2024, 3, 1)


class TestDeriveGrnStatus:

    @pytest.mark.parametrize("lines,expected", [
        ([(10, 0), (5, 0)], GRNStatus.RECEIVED),
        ([(10, 2), (5, 0)], GRNStatus.PARTIAL),
        ([(10, 10), (5, 5)], GRNStatus.REJECTED),
    ])
    def test_status(self, lines, expected):
        items = [SimpleNamespace(quantity_received=Decimal(r), quantity_rejected=Decimal(j)) for r, j in lines]
        assert derive_grn_status(items) == expected


class TestEndToEnd:

    def test_receive_sell_leaves_net_stock(self, db, patient, store, make_product, approved_po):
        product = make_product(mrp="10.00")
        po, _ = approved_po(qty=50, products=[product])
        create_goods_receipt(db, TENANT, USER, _grn_payload(po, store, (product, "B1", 50, 0)))

        sale = create_op_sale(db, TENANT, USER, OPSaleCreate(
            patient_id=patient.id,
            store_id=store.id,
            items=[SaleItemIn(product_id=product.id, quantity=Decimal("20"), discount=Decimal("0.50"))],
        ))

        assert sale.status == SaleStatus.COMPLETED
        assert batch_balance(db, TENANT, store.id, product.id, "B1") == Decimal("30")
        rows = db.query(InventoryLedger).filter(
            InventoryLedger.store_id == store.id,
            InventoryLedger.product_id == product.id,
            InventoryLedger.batch_number == "B1",
        ).order_by(InventoryLedger.id).all()
        assert [(r.transaction_type, r.quantity_change) for r in rows] == [
            (LedgerTxnType.GRN_IN, Decimal("50")),
            (LedgerTxnType.SALE_OUT, Decimal("-20")),
        ]
