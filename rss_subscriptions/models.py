"""Shared data models for rss_subscriptions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Union


class SubscriptionType(str, Enum):
    RSS = "RSS"
    NEWSLETTER = "NEWSLETTER"


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    UNSUBSCRIBED = "UNSUBSCRIBED"


class SortBy(str, Enum):
    CREATED_TIME = "CREATED_TIME"
    UPDATED_TIME = "UPDATED_TIME"
    POPULARITY = "POPULARITY"
    TITLE = "TITLE"


class SortOrder(str, Enum):
    ASCENDING = "ASCENDING"
    DESCENDING = "DESCENDING"


class SubscribeErrorCode(str, Enum):
    BAD_REQUEST = "BAD_REQUEST"
    NOT_FOUND = "NOT_FOUND"
    ALREADY_SUBSCRIBED = "ALREADY_SUBSCRIBED"
    EXCEEDED_MAX_SUBSCRIPTIONS = "EXCEEDED_MAX_SUBSCRIPTIONS"


class UnsubscribeErrorCode(str, Enum):
    BAD_REQUEST = "BAD_REQUEST"
    NOT_FOUND = "NOT_FOUND"


class UpdateSubscriptionErrorCode(str, Enum):
    BAD_REQUEST = "BAD_REQUEST"


class SubscriptionsErrorCode(str, Enum):
    BAD_REQUEST = "BAD_REQUEST"


class FeedsErrorCode(str, Enum):
    BAD_REQUEST = "BAD_REQUEST"


class ScanFeedsErrorCode(str, Enum):
    BAD_REQUEST = "BAD_REQUEST"
    NOT_FOUND = "NOT_FOUND"


def transition(
    current: SubscriptionStatus, target: Union[SubscriptionStatus, str]
) -> SubscriptionStatus:
    """Return the status a subscription moves to when ``target`` is requested.

    Both states may move to the other one. Requesting the current state is an
    idempotent no-op, so unsubscribing an already unsubscribed row succeeds
    and leaves it unsubscribed. Anything that is not one of the two states is
    rejected.
    """
    try:
        target = SubscriptionStatus(target)
    except ValueError:
        raise ValueError(f"Unsupported subscription status: {target!r}") from None
    if current not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.UNSUBSCRIBED):
        raise ValueError(f"Unsupported subscription status: {current!r}")
    return target


@dataclass
class Subscription:
    """Detached snapshot of a subscription row."""

    id: str
    user_id: str
    type: SubscriptionType
    name: str
    status: SubscriptionStatus
    created_at: datetime
    url: Optional[str] = None
    description: Optional[str] = None
    icon: Optional[str] = None
    updated_at: Optional[datetime] = None
    last_fetched_at: Optional[datetime] = None
    last_fetched_checksum: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    auto_add_to_library: bool = False
    is_private: bool = False
    unsubscribe_mail_to: Optional[str] = None
    unsubscribe_http_url: Optional[str] = None
    newsletter_email: Optional[str] = None


@dataclass
class FeedCandidate:
    """Feed discovered in an OPML document, HTML page or feed URL."""

    url: str
    title: str
    type: str = "rss"


@dataclass
class FeedInfo:
    """Metadata read from a parsed feed document."""

    url: str
    title: str
    description: Optional[str] = None
    thumbnail: Optional[str] = None


@dataclass
class FeedCatalogEntry:
    """Read-only feed projection returned by the catalog search."""

    id: str
    title: str
    url: str
    description: Optional[str] = None
    image: Optional[str] = None
    subscriber_count: int = 0


@dataclass
class SubscribeOptions:
    auto_add_to_library: Optional[bool] = None
    is_private: Optional[bool] = None


@dataclass
class Sort:
    by: Optional[SortBy] = None
    order: Optional[SortOrder] = None


@dataclass
class SubscriptionUpdate:
    """Partial update; ``None`` leaves the stored value untouched."""

    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    last_fetched_at: Optional[Union[datetime, str]] = None
    last_fetched_checksum: Optional[str] = None
    status: Optional[Union[SubscriptionStatus, str]] = None
    scheduled_at: Optional[Union[datetime, str]] = None
    auto_add_to_library: Optional[bool] = None
    is_private: Optional[bool] = None


@dataclass
class SubscribeSuccess:
    subscriptions: List[Subscription]


@dataclass
class SubscribeError:
    error_codes: List[SubscribeErrorCode]


@dataclass
class UnsubscribeSuccess:
    subscription: Subscription


@dataclass
class UnsubscribeError:
    error_codes: List[UnsubscribeErrorCode]


@dataclass
class UpdateSubscriptionSuccess:
    subscription: Subscription


@dataclass
class UpdateSubscriptionError:
    error_codes: List[UpdateSubscriptionErrorCode]


@dataclass
class SubscriptionsSuccess:
    subscriptions: List[Subscription]


@dataclass
class SubscriptionsError:
    error_codes: List[SubscriptionsErrorCode]


@dataclass
class ScanFeedsSuccess:
    feeds: List[FeedCandidate]


@dataclass
class ScanFeedsError:
    error_codes: List[ScanFeedsErrorCode]


@dataclass
class FeedEdge:
    node: FeedCatalogEntry
    cursor: str


@dataclass
class PageInfo:
    has_previous_page: bool
    has_next_page: bool
    start_cursor: str
    end_cursor: str
    total_count: int


@dataclass
class FeedsSuccess:
    edges: List[FeedEdge] = field(default_factory=list)
    page_info: Optional[PageInfo] = None


@dataclass
class FeedsError:
    error_codes: List[FeedsErrorCode]
