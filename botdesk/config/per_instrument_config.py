"""Load per-instrument strategy overrides from YAML.

Optional file path via env `BOT_INSTRUMENT_CONFIG`, default `configs/instruments.yaml`.
Returns a dict mapping symbol -> dict of overrides, e.g.::

    BTC:
      quantity_scale: 0.01
      profit_pct: 0.8
    xyz:TSLA:
      bar_unit: hour
      window_bars: 10
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

log = logging.getLogger("botdesk")


def load_instrument_overrides(path: str | None = None) -> Dict[str, Dict[str, Any]]:
    if path is None:
        path = os.getenv("BOT_INSTRUMENT_CONFIG", "configs/instruments.yaml")
    p = Path(path)
    if not p.exists():
        return {}
    try:
        with p.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except (OSError, yaml.YAMLError) as exc:
        log.error(json.dumps({"event": "instrument_config_error", "path": str(p), "err": str(exc)}))
        return {}
    if isinstance(data, dict):
        return {str(k): v for k, v in data.items() if isinstance(v, dict)}
    return {}
