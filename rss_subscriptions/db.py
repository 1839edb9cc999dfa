"""Database layer for subscription records."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
    and_,
    create_engine,
    func,
    insert,
    literal,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import (
    DeclarativeBase,
    Session,
    joinedload,
    relationship,
    sessionmaker,
)

from .models import Subscription, SubscriptionStatus, SubscriptionType

logger = logging.getLogger(__name__)

SORT_COLUMNS = ("created_at", "last_fetched_at", "updated_at", "name")
SERIALIZATION_RETRIES = 3
SERIALIZATION_FAILURE = "40001"


class SubscriptionNotFoundError(LookupError):
    """Raised when no subscription matches the id and owner."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class NewsletterEmailModel(Base):
    """Inbound address a newsletter subscription receives mail on."""

    __tablename__ = "newsletter_emails"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), nullable=False, index=True)
    address = Column(String, nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class SubscriptionModel(Base):
    """A user's link to an RSS feed or a newsletter."""

    __tablename__ = "subscriptions"
    __table_args__ = (
        UniqueConstraint("user_id", "url", "type", name="uq_subscriptions_user_url"),
        CheckConstraint(
            "type <> 'NEWSLETTER' OR newsletter_email_id IS NOT NULL",
            name="ck_subscriptions_newsletter_email",
        ),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), nullable=False, index=True)
    type = Column(
        Enum(SubscriptionType, native_enum=False, create_constraint=True,
             name="subscription_type"),
        nullable=False,
        default=SubscriptionType.RSS,
    )
    url = Column(String, nullable=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    icon = Column(String, nullable=True)
    status = Column(
        Enum(SubscriptionStatus, native_enum=False, create_constraint=True,
             name="subscription_status"),
        nullable=False,
        default=SubscriptionStatus.ACTIVE,
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=True, default=_utcnow)
    last_fetched_at = Column(DateTime(timezone=True), nullable=True)
    last_fetched_checksum = Column(String, nullable=True)
    scheduled_at = Column(DateTime(timezone=True), nullable=True)
    auto_add_to_library = Column(Boolean, nullable=False, default=False)
    is_private = Column(Boolean, nullable=False, default=False)
    unsubscribe_mail_to = Column(String, nullable=True)
    unsubscribe_http_url = Column(String, nullable=True)
    newsletter_email_id = Column(
        String(36), ForeignKey("newsletter_emails.id"), nullable=True, unique=True
    )

    newsletter_email = relationship(NewsletterEmailModel)


@dataclass
class NewSubscription:
    """Values for a subscription row that does not exist yet."""

    user_id: str
    url: str
    name: str
    type: SubscriptionType = SubscriptionType.RSS
    description: Optional[str] = None
    icon: Optional[str] = None
    auto_add_to_library: bool = False
    is_private: bool = False


def init_engine(connection_string: Optional[str]) -> Optional[Engine]:
    """Initialize the database engine and create missing tables."""
    if not connection_string:
        return None

    logger.info("Initializing database connection: %s", connection_string)
    kwargs: Dict[str, Any] = {}
    if connection_string.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    engine = create_engine(connection_string, **kwargs)
    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Return a session factory for the given engine."""
    return sessionmaker(bind=engine)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_subscription(row: SubscriptionModel) -> Subscription:
    """Copy an ORM row into a detached snapshot."""
    return Subscription(
        id=row.id,
        user_id=row.user_id,
        type=row.type,
        name=row.name,
        status=row.status,
        created_at=_as_utc(row.created_at),
        url=row.url,
        description=row.description,
        icon=row.icon,
        updated_at=_as_utc(row.updated_at),
        last_fetched_at=_as_utc(row.last_fetched_at),
        last_fetched_checksum=row.last_fetched_checksum,
        scheduled_at=_as_utc(row.scheduled_at),
        auto_add_to_library=bool(row.auto_add_to_library),
        is_private=bool(row.is_private),
        unsubscribe_mail_to=row.unsubscribe_mail_to,
        unsubscribe_http_url=row.unsubscribe_http_url,
        newsletter_email=(
            row.newsletter_email.address if row.newsletter_email is not None else None
        ),
    )


def _load(session: Session, subscription_id: str, user_id: str) -> Optional[SubscriptionModel]:
    stmt = (
        select(SubscriptionModel)
        .options(joinedload(SubscriptionModel.newsletter_email))
        .where(
            SubscriptionModel.id == subscription_id,
            SubscriptionModel.user_id == user_id,
        )
        .execution_options(populate_existing=True)
    )
    return session.execute(stmt).scalar_one_or_none()


def find_subscription_by_url(
    session: Session,
    user_id: str,
    url: str,
    subscription_type: SubscriptionType = SubscriptionType.RSS,
) -> Optional[SubscriptionModel]:
    """Return the user's subscription for ``url`` in any status."""
    stmt = select(SubscriptionModel).where(
        SubscriptionModel.user_id == user_id,
        SubscriptionModel.url == url,
        SubscriptionModel.type == subscription_type,
    )
    return session.execute(stmt).scalar_one_or_none()


def find_subscription(
    session: Session,
    user_id: str,
    subscription_id: Optional[str] = None,
    name: Optional[str] = None,
) -> Optional[SubscriptionModel]:
    """Resolve a subscription by id, or by name when no id is given."""
    stmt = (
        select(SubscriptionModel)
        .options(joinedload(SubscriptionModel.newsletter_email))
        .where(SubscriptionModel.user_id == user_id)
    )
    if subscription_id:
        stmt = stmt.where(SubscriptionModel.id == subscription_id)
    elif name:
        stmt = stmt.where(SubscriptionModel.name == name)
    else:
        return None

    stmt = stmt.order_by(SubscriptionModel.created_at.asc()).limit(1)
    return session.execute(stmt).scalars().first()


def list_subscriptions(
    session: Session,
    user_id: str,
    subscription_type: Optional[SubscriptionType] = None,
    sort_column: str = "created_at",
    descending: bool = True,
) -> List[SubscriptionModel]:
    """List a user's subscriptions, active rows first, NULL sort keys last."""
    if sort_column not in SORT_COLUMNS:
        raise ValueError(f"Unsupported sort column: {sort_column}")

    active_newsletters = and_(
        SubscriptionModel.type == SubscriptionType.NEWSLETTER,
        SubscriptionModel.status == SubscriptionStatus.ACTIVE,
    )
    stmt = (
        select(SubscriptionModel)
        .options(joinedload(SubscriptionModel.newsletter_email))
        .where(SubscriptionModel.user_id == user_id)
    )
    if subscription_type == SubscriptionType.NEWSLETTER:
        stmt = stmt.where(active_newsletters)
    elif subscription_type == SubscriptionType.RSS:
        stmt = stmt.where(SubscriptionModel.type == SubscriptionType.RSS)
    else:
        stmt = stmt.where(
            or_(active_newsletters, SubscriptionModel.type == SubscriptionType.RSS)
        )

    column = getattr(SubscriptionModel, sort_column)
    ordered = column.desc() if descending else column.asc()
    stmt = stmt.order_by(
        SubscriptionModel.status.asc(),
        ordered.nulls_last(),
        SubscriptionModel.id.asc(),
    )
    return list(session.execute(stmt).scalars().unique().all())


def _active_rss_count(user_id: str):
    counted = SubscriptionModel.__table__.alias("active_rss")
    return (
        select(func.count())
        .select_from(counted)
        .where(
            counted.c.user_id == user_id,
            counted.c.type == SubscriptionType.RSS,
            counted.c.status == SubscriptionStatus.ACTIVE,
        )
        .scalar_subquery()
    )


def _begin_serializable(session: Session) -> None:
    # Must be the first statement of the session's transaction.
    session.connection(execution_options={"isolation_level": "SERIALIZABLE"})


def is_serialization_failure(exc: BaseException) -> bool:
    """True for SQLSTATE 40001 raised by the driver (psycopg 3 or psycopg2)."""
    if not isinstance(exc, DBAPIError):
        return False
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code == SERIALIZATION_FAILURE


def _execute_guarded(session: Session, stmt, description: str) -> List[str]:
    """Run a quota-guarded statement in its own SERIALIZABLE transaction.

    A transaction aborted by the database as a serialization failure is
    replayed from scratch, up to ``SERIALIZATION_RETRIES`` attempts.
    """
    attempt = 1
    while True:
        _begin_serializable(session)
        try:
            ids = list(session.execute(stmt).scalars().all())
            session.commit()
            return ids
        except Exception as exc:
            session.rollback()
            if not is_serialization_failure(exc) or attempt >= SERIALIZATION_RETRIES:
                raise
            logger.info(
                "Serialization failure during %s, retrying (attempt %d of %d)",
                description,
                attempt + 1,
                SERIALIZATION_RETRIES,
            )
            attempt += 1


def insert_with_quota(
    session: Session, row: NewSubscription, max_active_rss: int
) -> List[SubscriptionModel]:
    """Insert ``row`` only while the user holds fewer than ``max_active_rss``
    active RSS subscriptions.

    The count and the insert are one ``INSERT ... SELECT ... WHERE`` statement,
    so concurrent callers cannot both pass the check on a stale count. Returns
    a one-element list with the new row, or an empty list when the quota is
    already used up.
    """
    table = SubscriptionModel.__table__
    now = _utcnow()
    values = {
        "id": _new_id(),
        "user_id": row.user_id,
        "type": row.type,
        "url": row.url,
        "name": row.name,
        "description": row.description,
        "icon": row.icon,
        "status": SubscriptionStatus.ACTIVE,
        "created_at": now,
        "updated_at": now,
        "auto_add_to_library": bool(row.auto_add_to_library),
        "is_private": bool(row.is_private),
    }
    guarded = select(
        *[literal(value, table.c[name].type) for name, value in values.items()]
    ).where(_active_rss_count(row.user_id) < max_active_rss)
    stmt = (
        insert(table)
        .from_select(list(values), guarded)
        .returning(table.c.id)
    )

    inserted_ids = _execute_guarded(session, stmt, f"insert of {row.url}")
    if not inserted_ids:
        logger.info(
            "User %s reached the limit of %d active RSS subscriptions",
            row.user_id,
            max_active_rss,
        )
        return []

    created = _load(session, inserted_ids[0], row.user_id)
    logger.debug("Inserted subscription %s for %s", inserted_ids[0], row.url)
    return [created] if created is not None else []


def reactivate_with_quota(
    session: Session, subscription_id: str, user_id: str, max_active_rss: int
) -> Optional[SubscriptionModel]:
    """Flip an UNSUBSCRIBED row back to ACTIVE under the same quota guard.

    Fetch bookkeeping (``last_fetched_at`` and checksum) is left as it was.
    Returns ``None`` when the row is not UNSUBSCRIBED or the quota is met.
    """
    table = SubscriptionModel.__table__
    stmt = (
        update(table)
        .where(
            table.c.id == subscription_id,
            table.c.user_id == user_id,
            table.c.status == SubscriptionStatus.UNSUBSCRIBED,
            _active_rss_count(user_id) < max_active_rss,
        )
        .values(status=SubscriptionStatus.ACTIVE, updated_at=_utcnow())
        .returning(table.c.id)
    )

    updated_ids = _execute_guarded(
        session, stmt, f"reactivation of {subscription_id}"
    )
    if not updated_ids:
        return None
    return _load(session, subscription_id, user_id)


def update_fields(
    session: Session, subscription_id: str, user_id: str, fields: Dict[str, Any]
) -> SubscriptionModel:
    """Write only the given fields, then re-read the row in the same transaction."""
    table = SubscriptionModel.__table__
    unknown = set(fields) - set(table.c.keys())
    if unknown:
        raise ValueError(f"Unknown subscription fields: {sorted(unknown)}")

    try:
        if fields:
            session.execute(
                update(table)
                .where(table.c.id == subscription_id, table.c.user_id == user_id)
                .values({"updated_at": _utcnow(), **fields})
            )
        updated = _load(session, subscription_id, user_id)
        if updated is None:
            raise SubscriptionNotFoundError(
                f"Subscription {subscription_id} not found for user {user_id}"
            )
        session.commit()
    except Exception:
        session.rollback()
        raise

    return updated
