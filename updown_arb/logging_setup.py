from __future__ import annotations

import logging

from updown_arb.monitor_log import MonitorLog


def configure_logging(level: str, monitor_log: MonitorLog | None = None) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    if monitor_log is not None:
        # Bot messages go to the same per-slot file as the price lines.
        handler = monitor_log.start()
        handler.setLevel(logging.INFO)
        logging.getLogger("updown_arb").addHandler(handler)
