from __future__ import annotations

from ..extensions import db
from trustcore.time_utils import to_utc_z


class Store(db.Model):
    """
    Store (checkout location).

    Store-level tax configuration is read by the tax collaborator
    (services/tax_service.py); the ledger never reads it directly.
    """
    __tablename__ = "stores"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_stores_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    code = db.Column(db.String(32), nullable=True, index=True)
    state_code = db.Column(db.String(8), nullable=True)

    timezone = db.Column(db.String(64), nullable=False, default='UTC')
    # Basis points (e.g., 825 = 8.25%). NULL means "use DEFAULT_TAX_RATE_BPS".
    tax_rate_bps = db.Column(db.Integer, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Store id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "state_code": self.state_code,
            "timezone": self.timezone,
            "tax_rate_bps": self.tax_rate_bps,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
