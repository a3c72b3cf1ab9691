"""
Parsing helpers for Hyperliquid exchange responses.

Responses look like
{"status":"ok","response":{"type":"order","data":{"statuses":[{"resting":{"oid":123,"cloid":"0x.."}}]}}}
or, on failure, {"status":"err","response":"..."} or a status entry {"error": "..."}.
"""

from __future__ import annotations

from typing import Any, Optional, Tuple

from botdesk.core.utils import to_float_safe, to_int_safe

_ID_KEYS = ("resting", "filled", "cancelled", "order")


def _parse_ids(d: dict) -> Tuple[Optional[int], Optional[str]]:
    oid_val = to_int_safe(d.get("oid")) if "oid" in d else None
    cloid_val = str(d["cloid"]) if d.get("cloid") is not None else None
    return oid_val, cloid_val


def extract_statuses(resp: Any) -> list[Any]:
    if not isinstance(resp, dict):
        return []
    payload: Any = resp.get("response", resp)
    if isinstance(payload, dict) and "data" in payload:
        payload = payload.get("data", payload)
    statuses = payload.get("statuses") if isinstance(payload, dict) else None
    return statuses if isinstance(statuses, list) else []


def extract_ids(resp: Any) -> Tuple[Optional[int], Optional[str]]:
    """Extract oid/cloid from a single or bulk response, resting or filled."""
    if not isinstance(resp, dict):
        return None, None
    for st in extract_statuses(resp):
        if not isinstance(st, dict):
            continue
        for key in _ID_KEYS:
            if isinstance(st.get(key), dict):
                oid_val, cloid_val = _parse_ids(st[key])
                if oid_val is not None or cloid_val is not None:
                    return oid_val, cloid_val
    for key in _ID_KEYS:
        if isinstance(resp.get(key), dict):
            return _parse_ids(resp[key])
    return _parse_ids(resp)


def extract_fill(resp: Any) -> Optional[Tuple[float, float]]:
    """Return (total size, average price) when the order filled immediately."""
    for st in extract_statuses(resp):
        if isinstance(st, dict) and isinstance(st.get("filled"), dict):
            filled = st["filled"]
            total = to_float_safe(filled.get("totalSz"), 0.0) or 0.0
            avg = to_float_safe(filled.get("avgPx"), 0.0) or 0.0
            return total, avg
    return None


def extract_error_message(resp: Any) -> Optional[str]:
    if resp is None:
        return "empty response"
    if not isinstance(resp, dict):
        return None
    if resp.get("status") == "err":
        return str(resp.get("response", resp))
    for st in extract_statuses(resp):
        if isinstance(st, dict) and st.get("error"):
            return str(st.get("error"))
    payload = resp.get("response")
    if isinstance(payload, dict):
        data = payload.get("data", {})
        if isinstance(data, dict) and data.get("error"):
            return str(data.get("error"))
    return None
