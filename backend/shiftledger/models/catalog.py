from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class Product(db.Model):
    """
    Sellable menu item.

    Prices and tax are snapshotted onto OrderItem rows when ordered, so later
    catalog edits never change an existing receipt.
    """
    __tablename__ = "products"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=False, unique=True, index=True)
    name = db.Column(db.String(128), nullable=False)
    category = db.Column(db.String(64), nullable=False, default="GENERAL")

    price_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)  # 1600 = 16%

    # Stock tracking is optional (prepared dishes usually are not tracked)
    track_stock = db.Column(db.Boolean, nullable=False, default=False)
    on_hand_qty = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "category": self.category,
            "price_cents": self.price_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "track_stock": self.track_stock,
            "on_hand_qty": self.on_hand_qty,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class StockMovement(db.Model):
    """
    Append-only stock change written by the default inventory collaborator.

    movement_type: SALE (negative delta), SALE_VOID (positive delta)
    """
    __tablename__ = "stock_movements"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    receipt_id = db.Column(db.Integer, db.ForeignKey("receipts.id"), nullable=True, index=True)
    quantity_delta = db.Column(db.Integer, nullable=False)
    movement_type = db.Column(db.String(16), nullable=False)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "receipt_id": self.receipt_id,
            "quantity_delta": self.quantity_delta,
            "movement_type": self.movement_type,
            "occurred_at": to_utc_z(self.occurred_at),
        }
