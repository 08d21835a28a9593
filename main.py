# main.py

import argparse
import json
import logging
import re
import sys
import threading

from pydantic import ValidationError

from stadia_spider.config import SpiderConfig, load_config
from stadia_spider.export import export_database
from stadia_spider.rpc import Client, GoogleCookies, Throttle, discover_sessions, login_interactively
from stadia_spider.spider import Spider
from stadia_spider.tables import CAPTURE, GAME, TABLES_BY_NAME, DatabaseRequestContext, SpiderDatabase

logger = logging.getLogger(__name__)

_RPC_CALL = re.compile(r"^([A-Za-z0-9]+)(.*)$", re.DOTALL)


def _safe_print(message: str) -> None:
    """Print with a fallback for restricted terminal encodings."""
    try:
        print(message)
    except UnicodeEncodeError:
        print(message.encode("ascii", "replace").decode("ascii"))


def _dump(value) -> str:
    if hasattr(value, "model_dump_json"):
        return value.model_dump_json(indent=2)
    if isinstance(value, list):
        return json.dumps(
            [item.model_dump(mode="json") if hasattr(item, "model_dump") else item for item in value],
            indent=2,
        )
    return json.dumps(value, indent=2)


def make_client(config: SpiderConfig) -> Client:
    throttle = Throttle(config.request_interval_seconds)
    if config.offline:
        return Client(config.google_id, GoogleCookies(), throttle, config.http_timeout_seconds, offline=True)
    if config.google_cookie:
        cookies = GoogleCookies.from_string(config.google_cookie)
        return Client(config.google_id, cookies, throttle, config.http_timeout_seconds)

    sessions = discover_sessions(config.storage_state_path, config.google_id)
    if not sessions:
        raise SystemExit(
            f"No Google session found in {config.storage_state_path}. "
            "Run `login` first or pass --google-cookie."
        )
    session = sessions[0]
    logger.info("Using session from %s", session.source)
    return Client(session.google_id, session.cookies, throttle, config.http_timeout_seconds)


def parse_rpc_call(text: str):
    """`METHOD` or `METHOD[json args]` -> (method id, args)."""
    match = _RPC_CALL.match(text.strip())
    if not match:
        raise ValueError(f"not an rpc call: {text!r}")
    method_id, rest = match.groups()
    return method_id, (json.loads(rest) if rest.strip() else None)


def parse_key_arg(definition, text: str):
    try:
        return definition.parse_key(text)
    except ValidationError:
        try:
            return definition.parse_key(json.loads(text))
        except (ValueError, ValidationError):
            raise ValueError(f"{text!r} is not a valid {definition.name} key")


def cmd_spider(args, config: SpiderConfig) -> int:
    database = SpiderDatabase(config.sqlite_path, skip_seeding=config.skip_seeding)
    try:
        spider = Spider(
            make_client(config),
            database,
            table_names=args.table,
            idle_sleep_seconds=config.idle_sleep_seconds,
            error_sleep_seconds=config.error_sleep_seconds,
            min_max_age_seconds=config.min_max_age_seconds,
        )
        stop = threading.Event()
        try:
            spider.run(stop)
        except KeyboardInterrupt:
            stop.set()
            _safe_print("Interrupted.")
    finally:
        database.close()
    return 0


def cmd_fetch(args, config: SpiderConfig) -> int:
    definition = TABLES_BY_NAME.get(args.table_name)
    if definition is None:
        _safe_print(f"Unknown table {args.table_name}. Known: {', '.join(TABLES_BY_NAME)}")
        return 2
    key = parse_key_arg(definition, args.key)

    database = SpiderDatabase(config.sqlite_path, skip_seeding=config.skip_seeding)
    try:
        if config.offline:
            record = database.get_record(definition, key)
            if record is None or record.value is None:
                _safe_print(f"{definition.name} {key} is not cached.")
                return 1
            value = record.value
        else:
            value = Spider(make_client(config), database).fetch_record(definition, key)
        _safe_print(_dump(value))
    finally:
        database.close()
    return 0


def cmd_rpc(args, config: SpiderConfig) -> int:
    calls = [parse_rpc_call(text) for text in args.calls]
    responses = make_client(config).fetch_rpc_batch(calls)
    if args.json:
        _safe_print(json.dumps(responses, indent=2))
    else:
        for (method_id, _), response in zip(calls, responses):
            _safe_print(f"{method_id}: {json.dumps(response)}")
    return 0


def cmd_captures(args, config: SpiderConfig) -> int:
    client = make_client(config)
    database = SpiderDatabase(config.sqlite_path, skip_seeding=config.skip_seeding)
    count = 0
    try:
        context = DatabaseRequestContext(database)
        for capture in client.fetch_captures():
            with database.database.transaction("capture"):
                context.update(GAME, capture.game_id)
                context.update(CAPTURE, capture.capture_id, capture)
            count += 1
            _safe_print(f"{capture.capture_id} {capture.game_name or capture.game_id}")
    finally:
        database.close()
    _safe_print(f"Registered {count} captures.")
    return 0


def cmd_export(args, config: SpiderConfig) -> int:
    database = SpiderDatabase(config.sqlite_path, skip_seeding=True)
    try:
        path, result = export_database(database, args.target, args.table)
    finally:
        database.close()
    _safe_print(f"Exported {result.copied} records ({result.reparsed} re-parsed, {result.failed} failed) to {path}")
    return 0


def cmd_login(args, config: SpiderConfig) -> int:
    path = login_interactively(config.storage_state_path)
    _safe_print(f"Saved session to {path}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Stadia RPC client and spider")
    parser.add_argument("--sqlite", default=None, help="SQLite cache path (defaults to STADIA_SPIDER_SQLITE or data/spider.sqlite)")
    parser.add_argument("--skip-seeding", action="store_true", default=None, help="Don't insert seed keys on startup")
    parser.add_argument("--google-cookie", default=None, help="Cookie string: SID=..;SSID=..;HSID=..")
    parser.add_argument("--storage-state", default=None, help="Playwright storage state file from `login`")
    parser.add_argument("--offline", action="store_true", default=None, help="Never make HTTP requests")
    parser.add_argument("--verbose", action="store_true", help="Verbose logging")

    sub = parser.add_subparsers(dest="command", required=True)

    spider = sub.add_parser("spider", help="Crawl stale records until interrupted")
    spider.add_argument("--table", action="append", choices=sorted(TABLES_BY_NAME), help="Limit to this table (repeatable)")
    spider.set_defaults(handler=cmd_spider)

    fetch = sub.add_parser("fetch", help="Fetch one record now and print its value")
    fetch.add_argument("table_name", metavar="TABLE")
    fetch.add_argument("key", metavar="KEY")
    fetch.set_defaults(handler=cmd_fetch)

    rpc = sub.add_parser("rpc", help="Send raw RPC calls in one batch, e.g. 'FWhQV[null,\"abc\"]'")
    rpc.add_argument("calls", nargs="+", metavar="METHOD[JSON]")
    rpc.add_argument("--json", action="store_true", help="Print all responses as one JSON array")
    rpc.set_defaults(handler=cmd_rpc)

    captures = sub.add_parser("captures", help="Page through your captures and cache them")
    captures.set_defaults(handler=cmd_captures)

    export = sub.add_parser("export", help="Re-parse stored responses into a new SQLite file, offline")
    export.add_argument("target", nargs="?", default=None, metavar="PATH", help="Defaults to the cache path with a timestamp suffix")
    export.add_argument("--table", action="append", choices=sorted(TABLES_BY_NAME), help="Limit to this table (repeatable)")
    export.set_defaults(handler=cmd_export)

    login = sub.add_parser("login", help="Sign in with a browser and save the session")
    login.set_defaults(handler=cmd_login)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = load_config().with_overrides(
        sqlite_path=args.sqlite,
        skip_seeding=args.skip_seeding,
        google_cookie=args.google_cookie,
        storage_state_path=args.storage_state,
        offline=args.offline,
    )
    return args.handler(args, config)


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
