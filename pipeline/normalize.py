"""Raw collector payload -> canonical :class:`~contracts.events.Event`.

The collector wraps every HTTP hit in a JSON envelope::

    {"m": "get"|"post", "epoch": ..., "time": ..., "ua": ..., "uri": ...,
     "params": {...}, "headers": {...}, "body": "<json>", ...}

GET hits are pixel/query beacons whose data lives in ``params``; POST hits
carry a JSON request document in ``body`` with its own ``headers``. Only the
outer envelope has to be valid JSON; every extracted field degrades to
``None`` (or an empty cookie map) when missing or malformed.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any
from urllib.parse import unquote_plus

from contracts.errors import NormalizationError
from contracts.events import Event, HttpMethod

PIXEL_URI = "/pixel.gif"
PIXEL_EVENT_TYPE = "pv"

# Epoch values above this are taken to be milliseconds (JS ``Date.now()``).
_EPOCH_MS_CUTOFF = 100_000_000_000


def parse_cookies(header: str | None) -> dict[str, str]:
    """Parse a ``Cookie`` header into a name -> URL-decoded value map.

    Pairs are split on ``;`` then on the first ``=``; the rest is the value.
    """
    if not header:
        return {}
    cookies: dict[str, str] = {}
    for part in str(header).split(";"):
        name, _, value = part.partition("=")
        name = name.strip()
        if not name:
            continue
        cookies[name] = unquote_plus(value.strip())
    return cookies


def epoch_to_timestamp(value: Any) -> str | None:
    """Render a unix epoch (seconds or milliseconds) as a UTC timestamp literal."""
    if value is None or isinstance(value, bool):
        return None
    try:
        seconds = float(str(value).strip())
    except ValueError:
        return None
    if seconds != seconds or seconds < 0:  # NaN or negative
        return None
    if seconds >= _EPOCH_MS_CUTOFF:
        seconds /= 1000.0
    try:
        dt = datetime.fromtimestamp(seconds, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return None
    return dt.replace(tzinfo=None).isoformat(sep=" ", timespec="milliseconds")


def _header(headers: Any, *names: str) -> Any:
    """Case-insensitive header lookup."""
    if not isinstance(headers, Mapping):
        return None
    for name in names:
        if name in headers:
            return headers[name]
    lowered = {str(k).lower(): v for k, v in headers.items()}
    for name in names:
        value = lowered.get(name.lower())
        if value is not None:
            return value
    return None


def _mapping_or_none(value: Any) -> dict[str, Any] | None:
    if isinstance(value, Mapping):
        return dict(value)
    return None


def _text_or_none(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def _first_forwarded_ip(value: Any) -> str:
    return str(value or "").split(",")[0].strip()


def _load_body(body: Any) -> dict[str, Any]:
    """Decode the POST request document; a bad body degrades to ``{}``."""
    if isinstance(body, Mapping):
        return dict(body)
    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8", errors="replace")
    if not isinstance(body, str) or not body.strip():
        return {}
    try:
        parsed = json.loads(body)
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _normalize_get(envelope: Mapping[str, Any]) -> dict[str, Any]:
    params = _mapping_or_none(envelope.get("params")) or {}
    headers = envelope.get("headers")
    is_pixel = envelope.get("uri") == PIXEL_URI
    received_at = epoch_to_timestamp(envelope.get("epoch"))
    if received_at is None:
        received_at = epoch_to_timestamp(params.get("_ts"))
    return {
        "received_at": received_at,
        "ts": _text_or_none(envelope.get("time")),
        "url": _text_or_none(params.get("url")),
        "ip": _first_forwarded_ip(_header(headers, "x-forwarded-for")),
        "evt_type": PIXEL_EVENT_TYPE if is_pixel else _text_or_none(params.get("_e")),
        "cookies": parse_cookies(_header(headers, "cookie")),
        "referrer": _text_or_none(params.get("_ref")),
        "user_agent": _text_or_none(envelope.get("ua")),
        "args": params,
    }


def _normalize_post(envelope: Mapping[str, Any]) -> dict[str, Any]:
    request = _load_body(envelope.get("body"))
    headers = request.get("headers")
    args = _mapping_or_none(request.get("args"))
    evt_type = request.get("evt_type")
    if evt_type is None and args:
        evt_type = args.get("_e")
    return {
        "received_at": epoch_to_timestamp(envelope.get("epoch")),
        "ts": epoch_to_timestamp(request.get("t")),
        "path": _text_or_none(request.get("path")),
        "url": _text_or_none(request.get("url")),
        "user_data": _mapping_or_none(request.get("user")),
        "referrer": _text_or_none(request.get("referrer")),
        "cookies": parse_cookies(_header(headers, "Cookie")),
        "ip": _text_or_none(_header(headers, "X-Forward-For", "X-Forwarded-For")),
        "evt_type": _text_or_none(evt_type),
        "args": args,
        "form": _mapping_or_none(request.get("form")),
        "user_agent": _text_or_none(_header(headers, "User-Agent")),
    }


_NORMALIZERS: dict[HttpMethod, Callable[[Mapping[str, Any]], dict[str, Any]]] = {
    HttpMethod.GET: _normalize_get,
    HttpMethod.POST: _normalize_post,
}


def parse_envelope(sequence_number: str, payload: bytes | str) -> dict[str, Any]:
    """Decode the outer JSON envelope or raise :class:`NormalizationError`."""
    if payload is None:
        raise NormalizationError(sequence_number, "empty payload")
    try:
        text = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else str(payload)
        envelope = json.loads(text)
    except (UnicodeDecodeError, ValueError) as exc:
        raise NormalizationError(sequence_number, f"payload is not valid JSON: {exc}") from exc
    if not isinstance(envelope, dict):
        raise NormalizationError(sequence_number, f"payload is a JSON {type(envelope).__name__}, not an object")
    return envelope


def normalize(sequence_number: str, payload: bytes | str) -> Event:
    """Build the canonical event for one record."""
    if not sequence_number:
        raise NormalizationError(str(sequence_number), "missing sequence number")
    envelope = parse_envelope(sequence_number, payload)
    method = HttpMethod.from_envelope(envelope.get("m"))
    fields = _NORMALIZERS[method](envelope)
    return Event(id=str(sequence_number), orig_data=envelope, **fields)
