"""Subscription lifecycle and listing."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Union

import requests
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from . import db
from .discovery import parse_feed
from .models import (
    FeedInfo,
    Sort,
    SortBy,
    SortOrder,
    SubscribeError,
    SubscribeErrorCode,
    SubscribeOptions,
    SubscribeSuccess,
    Subscription,
    SubscriptionsError,
    SubscriptionsErrorCode,
    SubscriptionsSuccess,
    SubscriptionStatus,
    SubscriptionType,
    SubscriptionUpdate,
    UnsubscribeError,
    UnsubscribeErrorCode,
    UnsubscribeSuccess,
    UpdateSubscriptionError,
    UpdateSubscriptionErrorCode,
    UpdateSubscriptionSuccess,
    transition,
)
from .scheduling import FetchRequest, FetchScheduler
from .tracking import EventTracker

logger = logging.getLogger(__name__)

MAX_RSS_SUBSCRIPTIONS = 150

FeedParser = Callable[[str], Optional[FeedInfo]]
Unsubscriber = Callable[[Subscription], None]


def parse_timestamp(value: Union[datetime, str]) -> datetime:
    """Accept a datetime or an ISO-8601 string; naive values are taken as UTC."""
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        value = datetime.fromisoformat(text)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _is_not_found(exc: Exception) -> bool:
    if not isinstance(exc, requests.HTTPError):
        return False
    return exc.response is not None and exc.response.status_code == 404


class SubscriptionService:
    """Subscribe, unsubscribe, update and list a user's subscriptions.

    Every public method returns a success or error result and never raises.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        scheduler: FetchScheduler,
        *,
        feed_parser: Optional[FeedParser] = None,
        unsubscriber: Optional[Unsubscriber] = None,
        tracker: Optional[EventTracker] = None,
        max_rss_subscriptions: int = MAX_RSS_SUBSCRIPTIONS,
    ):
        self._session_factory = session_factory
        self._scheduler = scheduler
        self._feed_parser = feed_parser or parse_feed
        self._unsubscriber = unsubscriber
        self._tracker = tracker
        self.max_rss_subscriptions = max_rss_subscriptions

    def _track(self, user_id: str, event: str, properties: Dict[str, Any]) -> None:
        if self._tracker is None:
            return
        try:
            self._tracker.track(user_id, event, properties)
        except Exception as exc:  # noqa: BLE001 - analytics must not fail requests
            logger.warning("Failed to track %s for %s: %s", event, user_id, exc)

    def _schedule_fetch(
        self,
        subscription: Subscription,
        url: str,
        fetched_at: Optional[datetime] = None,
        checksum: Optional[str] = None,
    ) -> None:
        self._scheduler.enqueue(
            [
                FetchRequest(
                    user_id=subscription.user_id,
                    subscription_id=subscription.id,
                    url=url,
                    scheduled_at=datetime.now(timezone.utc),
                    fetched_at=fetched_at,
                    checksum=checksum,
                    add_to_library=subscription.auto_add_to_library,
                )
            ]
        )

    def subscribe(
        self, user_id: str, url: str, options: Optional[SubscribeOptions] = None
    ) -> Union[SubscribeSuccess, SubscribeError]:
        options = options or SubscribeOptions()
        self._track(
            user_id,
            "subscribed",
            {
                "url": url,
                "auto_add_to_library": options.auto_add_to_library,
                "is_private": options.is_private,
            },
        )

        try:
            with self._session_factory() as session:
                existing = db.find_subscription_by_url(
                    session, user_id, url, SubscriptionType.RSS
                )
                existing = db.to_subscription(existing) if existing else None

            if existing is not None:
                if existing.status == SubscriptionStatus.ACTIVE:
                    return SubscribeError([SubscribeErrorCode.ALREADY_SUBSCRIBED])
                return self._resubscribe(existing, url)

            feed = self._feed_parser(url)
            if feed is None:
                logger.info("Refusing to subscribe %s to %s: not a feed", user_id, url)
                return SubscribeError([SubscribeErrorCode.NOT_FOUND])

            row = db.NewSubscription(
                user_id=user_id,
                url=url,
                name=feed.title,
                description=feed.description,
                icon=feed.thumbnail,
                auto_add_to_library=bool(options.auto_add_to_library),
                is_private=bool(options.is_private),
            )
            try:
                with self._session_factory() as session:
                    created = db.insert_with_quota(
                        session, row, self.max_rss_subscriptions
                    )
                    created = [db.to_subscription(item) for item in created]
            except IntegrityError:
                logger.info("Concurrent subscribe of %s to %s lost the race", user_id, url)
                return SubscribeError([SubscribeErrorCode.ALREADY_SUBSCRIBED])

            if not created:
                return SubscribeError([SubscribeErrorCode.EXCEEDED_MAX_SUBSCRIPTIONS])

            subscription = created[0]
            self._schedule_fetch(subscription, url)
            logger.info("User %s subscribed to %s (%s)", user_id, url, subscription.id)
            return SubscribeSuccess([subscription])
        except Exception as exc:
            logger.exception("Failed to subscribe %s to %s", user_id, url)
            if _is_not_found(exc):
                return SubscribeError([SubscribeErrorCode.NOT_FOUND])
            return SubscribeError([SubscribeErrorCode.BAD_REQUEST])

    def _resubscribe(
        self, existing: Subscription, url: str
    ) -> Union[SubscribeSuccess, SubscribeError]:
        with self._session_factory() as session:
            reactivated = db.reactivate_with_quota(
                session, existing.id, existing.user_id, self.max_rss_subscriptions
            )
            reactivated = db.to_subscription(reactivated) if reactivated else None

        if reactivated is None:
            with self._session_factory() as session:
                current = db.find_subscription(
                    session, existing.user_id, subscription_id=existing.id
                )
                if current is not None and current.status == SubscriptionStatus.ACTIVE:
                    return SubscribeError([SubscribeErrorCode.ALREADY_SUBSCRIBED])
            return SubscribeError([SubscribeErrorCode.EXCEEDED_MAX_SUBSCRIPTIONS])

        # The fetcher uses the previous fetch state to decide between an
        # incremental and a full fetch.
        self._schedule_fetch(
            reactivated,
            url,
            fetched_at=reactivated.last_fetched_at,
            checksum=reactivated.last_fetched_checksum,
        )
        logger.info("User %s resubscribed to %s (%s)", existing.user_id, url, existing.id)
        return SubscribeSuccess([reactivated])

    def unsubscribe(
        self,
        user_id: str,
        subscription_id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Union[UnsubscribeSuccess, UnsubscribeError]:
        logger.info("Unsubscribing %s from %s", user_id, subscription_id or name)

        try:
            with self._session_factory() as session:
                found = db.find_subscription(
                    session, user_id, subscription_id=subscription_id, name=name
                )
                if found is None:
                    return UnsubscribeError([UnsubscribeErrorCode.NOT_FOUND])
                subscription = db.to_subscription(found)

            if (
                subscription.type == SubscriptionType.NEWSLETTER
                and not subscription.unsubscribe_mail_to
                and not subscription.unsubscribe_http_url
            ):
                logger.info(
                    "No unsubscribe method found for newsletter subscription %s",
                    subscription.id,
                )

            if self._unsubscriber is not None:
                self._unsubscriber(subscription)

            with self._session_factory() as session:
                db.update_fields(
                    session,
                    subscription.id,
                    user_id,
                    {
                        "status": transition(
                            subscription.status, SubscriptionStatus.UNSUBSCRIBED
                        )
                    },
                )

            self._track(
                user_id,
                "unsubscribed",
                {"name": subscription.name, "subscription_id": subscription.id},
            )
            return UnsubscribeSuccess(subscription)
        except Exception:
            logger.exception("Failed to unsubscribe %s", user_id)
            return UnsubscribeError([UnsubscribeErrorCode.BAD_REQUEST])

    def update_subscription(
        self, user_id: str, update: SubscriptionUpdate
    ) -> Union[UpdateSubscriptionSuccess, UpdateSubscriptionError]:
        self._track(user_id, "update_subscription", {"id": update.id})

        try:
            fields: Dict[str, Any] = {}
            for name in ("name", "description", "last_fetched_checksum"):
                value = getattr(update, name)
                if value:
                    fields[name] = value
            for name in ("last_fetched_at", "scheduled_at"):
                value = getattr(update, name)
                if value:
                    fields[name] = parse_timestamp(value)
            for name in ("auto_add_to_library", "is_private"):
                value = getattr(update, name)
                if value is not None:
                    fields[name] = bool(value)

            reactivate = False
            if update.status:
                with self._session_factory() as session:
                    current = db.find_subscription(session, user_id, subscription_id=update.id)
                    if current is None:
                        raise db.SubscriptionNotFoundError(update.id)
                    status = transition(current.status, update.status)
                    reactivate = (
                        current.type == SubscriptionType.RSS
                        and current.status == SubscriptionStatus.UNSUBSCRIBED
                        and status == SubscriptionStatus.ACTIVE
                    )
                if not reactivate:
                    fields["status"] = status

            # Reactivating an RSS row counts against the quota like a resubscribe.
            if reactivate:
                with self._session_factory() as session:
                    reactivated = db.reactivate_with_quota(
                        session, update.id, user_id, self.max_rss_subscriptions
                    )
                if reactivated is None:
                    logger.info(
                        "Refusing to reactivate subscription %s for %s", update.id, user_id
                    )
                    return UpdateSubscriptionError([UpdateSubscriptionErrorCode.BAD_REQUEST])

            with self._session_factory() as session:
                updated = db.update_fields(session, update.id, user_id, fields)
                subscription = db.to_subscription(updated)

            return UpdateSubscriptionSuccess(subscription)
        except Exception:
            logger.exception("Failed to update subscription %s", update.id)
            return UpdateSubscriptionError([UpdateSubscriptionErrorCode.BAD_REQUEST])

    def list_subscriptions(
        self,
        user_id: str,
        subscription_type: Optional[SubscriptionType] = None,
        sort: Optional[Sort] = None,
    ) -> Union[SubscriptionsSuccess, SubscriptionsError]:
        sort = sort or Sort()
        sort_column = (
            "last_fetched_at" if sort.by == SortBy.UPDATED_TIME else "created_at"
        )
        descending = sort.order != SortOrder.ASCENDING

        try:
            with self._session_factory() as session:
                rows = db.list_subscriptions(
                    session,
                    user_id,
                    subscription_type=subscription_type,
                    sort_column=sort_column,
                    descending=descending,
                )
                subscriptions = [db.to_subscription(row) for row in rows]
            return SubscriptionsSuccess(subscriptions)
        except Exception:
            logger.exception("Failed to list subscriptions for %s", user_id)
            return SubscriptionsError([SubscriptionsErrorCode.BAD_REQUEST])
