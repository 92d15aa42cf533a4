#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from __future__ import annotations

import argparse
from pathlib import Path

import requests

from business_manager import exit_code_for, run_refresh
from common import resolve_config_dir, setup_logger
from config_store import ConfigStore


def parse_args() -> argparse.Namespace:
    script_dir = Path(__file__).resolve().parent
    default_log_dir = script_dir / "logs"

    parser = argparse.ArgumentParser(description="Refresh runner (refresh business tokens then sync pool)")
    parser.add_argument("--config-dir", default=None, help="Config directory")
    parser.add_argument("--log-dir", default=str(default_log_dir), help="Log directory")
    parser.add_argument("--skip-pool", action="store_true", help="Refresh tokens only")
    parser.add_argument("--headed", action="store_true", help="Show the browser window")
    return parser.parse_args()


def main() -> int:
    requests.packages.urllib3.disable_warnings()  # type: ignore[attr-defined]

    args = parse_args()
    config_dir = resolve_config_dir(args.config_dir)
    logger, log_path = setup_logger(Path(args.log_dir).resolve())

    logger.info("=== Refresh Task Start ===")
    logger.info("Config Dir: %s", config_dir)
    logger.info("Log File: %s", log_path)

    if not config_dir.is_dir():
        logger.error("Config directory not found: %s", config_dir)
        logger.info("=== Refresh Task End (Failed) ===")
        return 2

    store = ConfigStore(config_dir, logger=logger)
    try:
        data = run_refresh(store, logger, sync_pool=not args.skip_pool, headless=not args.headed)
    except Exception as e:
        logger.error("Refresh failed: %s", e)
        logger.info("=== Refresh Task End (Failed) ===")
        return exit_code_for(e)

    refresh = data["refreshResult"]
    logger.info("Refresh summary: success=%s fail=%s", refresh["successCount"], refresh["failureCount"])
    if "poolResult" in data:
        pool = data["poolResult"]
        logger.info(
            "Pool summary: added=%s skipped=%s failed=%s total=%s",
            pool["addedCount"],
            pool["skippedCount"],
            pool["failedCount"],
            pool["totalCount"],
        )

    if refresh["failureCount"]:
        logger.warning("Refresh incomplete: %s account(s) failed", refresh["failureCount"])
        logger.info("=== Refresh Task End (Partial) ===")
        return 1

    logger.info("=== Refresh Task End (Success) ===")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
