from __future__ import annotations

import argparse
import sys
import time

from mdsm.core.config import load_config, validate_config
from mdsm.core.errors import ConfigError
from mdsm.core.events import EventLogger
from mdsm.core.logger import setup_logging
from mdsm.core.service import Mdsm


def main() -> None:
    ap = argparse.ArgumentParser(description="MDSM session manager (Port mode listener)")
    ap.add_argument("--config", default="config/mdsm.json", help="Path to the MDSM JSON config.")
    ap.add_argument("--port", type=int, default=None, help="Override the configured port.")
    ap.add_argument("--host", default=None, help="Override the configured bind host.")
    args = ap.parse_args()

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        print(f"MDSM error: {e.user_message} {e.to_dict().get('context')}", file=sys.stderr)
        sys.exit(2)

    updates = {"mode": "Port"}
    if args.port is not None:
        updates["port"] = args.port
    if args.host is not None:
        updates["bind_host"] = args.host
    try:
        cfg = validate_config({**cfg.model_dump(), **updates})
    except ConfigError as e:
        print(f"MDSM error: {e.user_message} {e.to_dict().get('context')}", file=sys.stderr)
        sys.exit(2)

    logger = setup_logging(cfg.log_dir, level=cfg.log_level)
    mdsm = Mdsm(cfg, event_logger=EventLogger(cfg.events_path), logger=logger)
    handle = mdsm.start()

    try:
        while handle.is_alive():
            time.sleep(0.5)
    except KeyboardInterrupt:
        logger.info("Shutting down.")
    finally:
        mdsm.shutdown()
    if handle.failed.is_set():
        sys.exit(1)


if __name__ == "__main__":
    main()
