"""Command-line interface: scan for feeds and manage a user's subscriptions."""

from __future__ import annotations

import argparse
import dataclasses
import functools
import json
import logging
import os
import pprint
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional

from . import db
from .config import AppConfig, parse_app_config, parse_env_config
from .discovery import parse_feed, scan_feeds
from .models import (
    ScanFeedsSuccess,
    Sort,
    SortBy,
    SortOrder,
    SubscribeOptions,
    SubscribeSuccess,
    SubscriptionsSuccess,
    SubscriptionType,
    SubscriptionUpdate,
    UnsubscribeSuccess,
    UpdateSubscriptionSuccess,
)
from .scheduling import QueueFetchScheduler
from .subscriptions import SubscriptionService
from .tracking import LoggingTracker

logger = logging.getLogger(__name__)

SUCCESS_TYPES = (
    ScanFeedsSuccess,
    SubscribeSuccess,
    SubscriptionsSuccess,
    UnsubscribeSuccess,
    UpdateSubscriptionSuccess,
)


def build_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description="Manage RSS feed and newsletter subscriptions."
    )
    parser.add_argument(
        "--config",
        default="configs/config.xml",
        help="Path to the main configuration XML file.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (e.g. DEBUG, INFO, WARNING). Overrides config.",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Optional path to a log file. Overrides config.",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    scan = commands.add_parser("scan", help="Discover feeds in a page, feed or OPML file.")
    source = scan.add_mutually_exclusive_group(required=True)
    source.add_argument("--url", help="Web page or feed URL to inspect.")
    source.add_argument("--opml", metavar="PATH", help="OPML file to import.")
    scan.add_argument("--user", help="User the scan is tracked for.")

    subscribe = commands.add_parser("subscribe", help="Subscribe to an RSS feed.")
    subscribe.add_argument("--user", required=True)
    subscribe.add_argument("url")
    subscribe.add_argument("--auto-add", action="store_true", help="Add new items to the library.")
    subscribe.add_argument("--private", action="store_true", help="Mark the subscription private.")

    unsubscribe = commands.add_parser("unsubscribe", help="Unsubscribe by id or name.")
    unsubscribe.add_argument("--user", required=True)
    target = unsubscribe.add_mutually_exclusive_group(required=True)
    target.add_argument("--id", dest="subscription_id")
    target.add_argument("--name")

    listing = commands.add_parser("list", help="List subscriptions.")
    listing.add_argument("--user", required=True)
    listing.add_argument("--type", choices=[item.value for item in SubscriptionType])
    listing.add_argument("--sort-by", choices=[item.value for item in SortBy])
    listing.add_argument("--order", choices=[item.value for item in SortOrder])

    update = commands.add_parser("update", help="Update fields of a subscription.")
    update.add_argument("--user", required=True)
    update.add_argument("subscription_id")
    update.add_argument("--name")
    update.add_argument("--description")
    update.add_argument("--status")
    update.add_argument("--last-fetched-at", help="ISO-8601 timestamp.")
    update.add_argument("--last-fetched-checksum")
    update.add_argument("--scheduled-at", help="ISO-8601 timestamp.")
    update.add_argument("--auto-add", action=argparse.BooleanOptionalAction, default=None)
    update.add_argument("--private", action=argparse.BooleanOptionalAction, default=None)

    return parser


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
# Chatty libraries stay at WARNING unless DEBUG output was asked for.
NOISY_LOGGERS = ("urllib3", "sqlalchemy.engine", "charset_normalizer")


def configure_logging(level_name: str, log_file: Optional[str] = None) -> None:
    """Replace the root handlers with console (and optionally file) output."""
    log_level = getattr(logging, level_name.upper(), None)
    if not isinstance(log_level, int):
        raise ValueError(f"Unsupported log level: {level_name}")

    formatter = logging.Formatter(LOG_FORMAT)
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(log_level)

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    library_level = logging.DEBUG if log_level <= logging.DEBUG else logging.WARNING
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)

    logger.debug(
        "Logging at %s to console%s",
        level_name.upper(),
        f" and {log_file}" if log_file else "",
    )


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def render_result(result: Any) -> str:
    payload = dataclasses.asdict(result)
    payload["__typename"] = type(result).__name__
    return json.dumps(payload, indent=2, ensure_ascii=False, default=_json_default)


def build_service(app_config: AppConfig) -> SubscriptionService:
    """Wire the subscription service from configuration."""
    connection_string = app_config.resolve_connection_string()
    if not connection_string:
        raise ValueError("No database connection string configured.")

    engine = db.init_engine(connection_string)
    return SubscriptionService(
        db.get_session_factory(engine),
        QueueFetchScheduler(),
        feed_parser=functools.partial(
            parse_feed,
            timeout=app_config.http.timeout,
            user_agent=app_config.http.user_agent,
        ),
        tracker=LoggingTracker(app_config.environment),
        max_rss_subscriptions=app_config.subscriptions.max_active_rss,
    )


def run_command(args: argparse.Namespace, app_config: AppConfig) -> Any:
    """Execute the selected subcommand and return its result object."""
    if args.command == "scan":
        opml = None
        if args.opml:
            opml = Path(args.opml).read_text(encoding="utf-8")
        if args.user:
            LoggingTracker(app_config.environment).track(
                args.user, "scan_feeds", {"opml": bool(opml), "url": args.url}
            )
        return scan_feeds(
            opml=opml,
            url=args.url,
            timeout=app_config.http.timeout,
            user_agent=app_config.http.user_agent,
        )

    service = build_service(app_config)

    if args.command == "subscribe":
        return service.subscribe(
            args.user,
            args.url,
            SubscribeOptions(
                auto_add_to_library=args.auto_add, is_private=args.private
            ),
        )
    if args.command == "unsubscribe":
        return service.unsubscribe(
            args.user, subscription_id=args.subscription_id, name=args.name
        )
    if args.command == "list":
        return service.list_subscriptions(
            args.user,
            SubscriptionType(args.type) if args.type else None,
            Sort(
                by=SortBy(args.sort_by) if args.sort_by else None,
                order=SortOrder(args.order) if args.order else None,
            ),
        )
    if args.command == "update":
        return service.update_subscription(
            args.user,
            SubscriptionUpdate(
                id=args.subscription_id,
                name=args.name,
                description=args.description,
                last_fetched_at=args.last_fetched_at,
                last_fetched_checksum=args.last_fetched_checksum,
                status=args.status,
                scheduled_at=args.scheduled_at,
                auto_add_to_library=args.auto_add,
                is_private=args.private,
            ),
        )
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        app_config = parse_app_config(args.config)

        if app_config.env_file:
            env_vars = parse_env_config(app_config.env_file)
            os.environ.update(env_vars)

        # CLI flags override the config file.
        log_level = args.log_level or app_config.logging.level
        log_file = args.log_file or app_config.logging.file

        configure_logging(log_level, log_file)

        config_dict = dataclasses.asdict(app_config)
        if config_dict["database"].get("connection_string"):
            config_dict["database"]["connection_string"] = "***MASKED***"
        logger.debug("Active Configuration:\n%s", pprint.pformat(config_dict))

        result = run_command(args, app_config)
    except ValueError as exc:
        parser.error(str(exc))
    except (RuntimeError, FileNotFoundError) as exc:
        logger.error("%s", exc)
        return 1
    except Exception:  # noqa: BLE001
        logger.exception("Unexpected error during execution.")
        return 1

    print(render_result(result))
    return 0 if isinstance(result, SUCCESS_TYPES) else 1
