from __future__ import annotations

from .domain import (
    AccountSource,
    AccountStatus,
    AdjustmentType,
    RateLimit,
    RouterStatus,
    utcnow_naive,
)
from .extensions import db


def _enum(enum_cls, name: str):
    # stored as VARCHAR holding the member name; no native PG enum types to migrate
    return db.Enum(enum_cls, native_enum=False, length=20, name=name)


# =========================================================
# Routers (MikroTik devices)
# =========================================================
class Router(db.Model):
    __tablename__ = "routers"

    id = db.Column(db.Integer, primary_key=True)

    friendly_name = db.Column(db.String(80), nullable=False)

    address = db.Column(db.String(255), nullable=False)
    port = db.Column(db.Integer, nullable=False, default=8728)
    api_username = db.Column(db.String(80), nullable=False)
    api_password = db.Column(db.String(255), nullable=False)
    use_tls = db.Column(db.Boolean, nullable=False, default=False)

    # ONLINE / OFFLINE / ERROR, written after each connection attempt
    status = db.Column(_enum(RouterStatus, "router_status"), nullable=False, default=RouterStatus.OFFLINE, index=True)
    last_checked_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow_naive, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow_naive, onupdate=utcnow_naive, nullable=False)

    pppoe_users = db.relationship(
        "PPPoEUser",
        back_populates="router",
        cascade="all, delete-orphan",
        lazy="select",
    )
    speed_plans = db.relationship(
        "SpeedPlan",
        back_populates="router",
        cascade="all, delete-orphan",
        lazy="select",
    )

    def __repr__(self) -> str:
        return f"<Router id={self.id} name={self.friendly_name} status={self.status}>"


# =========================================================
# Speed plans (rate limits applied on account creation)
# =========================================================
class SpeedPlan(db.Model):
    __tablename__ = "speed_plans"

    id = db.Column(db.Integer, primary_key=True)

    router_id = db.Column(db.Integer, db.ForeignKey("routers.id", ondelete="CASCADE"), nullable=False, index=True)

    name = db.Column(db.String(60), nullable=False)

    # Kbps
    download_speed = db.Column(db.Integer, nullable=False)
    upload_speed = db.Column(db.Integer, nullable=False)

    description = db.Column(db.String(255), nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow_naive, nullable=False)

    router = db.relationship("Router", back_populates="speed_plans")

    @property
    def rate_limit(self) -> RateLimit:
        return RateLimit(download_kbps=int(self.download_speed), upload_kbps=int(self.upload_speed))

    def __repr__(self) -> str:
        return f"<SpeedPlan id={self.id} name={self.name} {self.download_speed}/{self.upload_speed}k>"


# =========================================================
# PPPoE users (subscriber secrets)
# =========================================================
class PPPoEUser(db.Model):
    __tablename__ = "pppoe_users"
    __table_args__ = (
        # usernames are unique per router, never globally
        db.UniqueConstraint("router_id", "username", name="uq_pppoe_users_router_username"),
    )

    id = db.Column(db.Integer, primary_key=True)

    router_id = db.Column(db.Integer, db.ForeignKey("routers.id", ondelete="CASCADE"), nullable=False, index=True)
    speed_plan_id = db.Column(db.Integer, db.ForeignKey("speed_plans.id", ondelete="SET NULL"), nullable=True)

    username = db.Column(db.String(80), nullable=False, index=True)
    password = db.Column(db.String(255), nullable=True)

    status = db.Column(_enum(AccountStatus, "pppoe_user_status"), nullable=False, default=AccountStatus.ACTIVE, index=True)
    source = db.Column(_enum(AccountSource, "pppoe_user_source"), nullable=False, default=AccountSource.MANUAL)

    activated_at = db.Column(db.DateTime, nullable=True)
    # NULL = no expiry (valid state, never enforced)
    expiry_at = db.Column(db.DateTime, nullable=True, index=True)
    imported_at = db.Column(db.DateTime, nullable=True)
    last_recharged_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow_naive, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow_naive, onupdate=utcnow_naive, nullable=False)

    router = db.relationship("Router", back_populates="pppoe_users", lazy="joined")
    speed_plan = db.relationship("SpeedPlan", lazy="joined")

    expiry_adjustments = db.relationship(
        "ExpiryAdjustment",
        back_populates="pppoe_user",
        order_by="ExpiryAdjustment.created_at.desc()",
        passive_deletes=True,
        lazy="select",
    )

    def is_overdue(self, now=None) -> bool:
        now = now or utcnow_naive()
        return (
            self.status == AccountStatus.ACTIVE
            and self.expiry_at is not None
            and self.expiry_at < now
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "routerId": self.router_id,
            "username": self.username,
            "status": self.status.value if self.status else None,
            "source": self.source.value if self.source else None,
            "activatedAt": self.activated_at.isoformat() if self.activated_at else None,
            "expiryAt": self.expiry_at.isoformat() if self.expiry_at else None,
            "lastRechargedAt": self.last_recharged_at.isoformat() if self.last_recharged_at else None,
            "speedPlanId": self.speed_plan_id,
        }

    def __repr__(self) -> str:
        return f"<PPPoEUser id={self.id} router_id={self.router_id} username={self.username} status={self.status}>"


# =========================================================
# Expiry adjustments (append-only)
# =========================================================
class ExpiryAdjustment(db.Model):
    __tablename__ = "expiry_adjustments"

    id = db.Column(db.Integer, primary_key=True)

    # survives account deletion
    pppoe_user_id = db.Column(
        db.Integer,
        db.ForeignKey("pppoe_users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    previous_expiry = db.Column(db.DateTime, nullable=True)
    new_expiry = db.Column(db.DateTime, nullable=True)

    type = db.Column(_enum(AdjustmentType, "expiry_adjustment_type"), nullable=False, index=True)

    created_at = db.Column(db.DateTime, default=utcnow_naive, nullable=False, index=True)

    pppoe_user = db.relationship("PPPoEUser", back_populates="expiry_adjustments")

    def __repr__(self) -> str:
        return f"<ExpiryAdjustment id={self.id} user_id={self.pppoe_user_id} type={self.type}>"


# =========================================================
# Audit log (append-only)
# =========================================================
class LogEntry(db.Model):
    __tablename__ = "log_entries"

    id = db.Column(db.Integer, primary_key=True)

    # e.g. PPPOE_USER_AUTO_DISABLED, ROUTER_RESYNC (see domain.LogAction)
    action = db.Column(db.String(60), nullable=False, index=True)

    router_id = db.Column(db.Integer, db.ForeignKey("routers.id", ondelete="SET NULL"), nullable=True, index=True)
    pppoe_user_id = db.Column(db.Integer, db.ForeignKey("pppoe_users.id", ondelete="SET NULL"), nullable=True, index=True)

    details = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow_naive, nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<LogEntry id={self.id} action={self.action} router_id={self.router_id} user_id={self.pppoe_user_id}>"
