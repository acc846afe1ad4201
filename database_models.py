from sqlalchemy import Column, Integer, String, Boolean, DateTime
from datetime import datetime, timezone
from database import Base


def _utcnow() -> datetime:
    # Naive UTC, matching what SQLite hands back for DateTime columns
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    """
    User record with its entitlement state.

    Entitlement columns (tier, status, period end, trial window, billing ids)
    are written only by the ReconciliationService. The ``version`` column is
    SQLAlchemy's version counter: every UPDATE carries ``WHERE version = ?``
    so two concurrent reconciliations cannot both win with stale reads.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    external_auth_id = Column(String, unique=True, nullable=True, index=True)
    username = Column(String, unique=True, nullable=False)
    email = Column(String, unique=True, nullable=False, index=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    subscription_tier = Column(String, nullable=False, default="free")
    subscription_status = Column(String, nullable=False, default="none")
    subscription_current_period_end = Column(DateTime, nullable=True)

    trial_start_date = Column(DateTime, nullable=True)
    trial_end_date = Column(DateTime, nullable=True)
    has_used_trial = Column(Boolean, nullable=False, default=False)
    trial_count = Column(Integer, nullable=False, default=0)

    external_customer_id = Column(String, nullable=True, index=True)
    external_subscription_id = Column(String, nullable=True, index=True)

    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class ProcessedWebhookEvent(Base):
    """
    Gateway events that have already been handled.
    Redelivered events are acknowledged without being processed again.
    """
    __tablename__ = "processed_webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String, unique=True, nullable=False, index=True)
    event_type = Column(String, nullable=False)
    outcome = Column(String, nullable=False)
    processed_at = Column(DateTime, default=_utcnow, nullable=False)
