from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from baitbreaker.app import build_app_context, build_host, close_app_context
from baitbreaker.config import Config, load_config
from baitbreaker.coordinator.service import ACTION_SUMMARY
from baitbreaker.logging_setup import setup_logging
from baitbreaker.requester.session import DocumentSession, LinkRef


logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="baitbreaker")
    parser.add_argument(
        "--env",
        default=".env",
        help="Path to .env file (default: .env).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    classify = sub.add_parser("classify", help="Classify link titles.")
    classify.add_argument("titles", nargs="+")
    classify.add_argument("--href", default="https://example.com/", help="URL used for every title.")
    classify.add_argument("--mode", choices=["heuristic", "model"], default=None)
    classify.add_argument("--sensitivity", type=int, default=None)
    classify.add_argument("--summaries", action="store_true", help="Also summarize flagged links.")

    summarize = sub.add_parser("summarize", help="Summarize an article.")
    summarize.add_argument("url")

    sub.add_parser("stats", help="Show cache entry counts.")
    sub.add_parser("clear-cache", help="Remove all cached classifications and summaries.")
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace, config: Config) -> dict | list:
    logger.info("baitbreaker %s", args.command)
    ctx = await build_app_context(config)
    host = build_host(ctx)
    await host.start()
    try:
        session = DocumentSession.from_config(host.handle(), config)
        if getattr(args, "mode", None):
            session.detection_mode = args.mode
        if args.command == "classify" and args.sensitivity is not None:
            session.sensitivity = args.sensitivity

        if args.command == "classify":
            session.prefetch_summaries = args.summaries
            refs = [LinkRef(identity=str(i), text=t, href=args.href) for i, t in enumerate(args.titles)]
            await session.classify_links(refs)
            out = []
            for ref in refs:
                item = session.links.get(ref.identity)
                out.append(
                    {
                        "text": ref.text,
                        "status": item.status.value if item else None,
                        "result": session.result(ref.identity),
                        "summary": session.summary(ref.identity),
                        "detail": item.detail if item else "",
                    }
                )
            return out

        if args.command == "summarize":
            summary = await session.requester.send({"action": ACTION_SUMMARY, "url": args.url})
            return {"url": args.url, "summary": summary}

        if args.command == "stats":
            return await session.cache_stats()

        return await session.clear_cache()
    finally:
        await host.aclose()
        await close_app_context(ctx)


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    env_path = Path(args.env)
    if env_path.exists():
        load_dotenv(env_path)
    else:
        load_dotenv()

    config = load_config()
    setup_logging(config.log_level, config.log_file)

    result = asyncio.run(_run(args, config))
    json.dump(result, sys.stdout, ensure_ascii=False, indent=2)
    sys.stdout.write("\n")


if __name__ == "__main__":
    main()
