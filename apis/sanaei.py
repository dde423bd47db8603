#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Helper functions for interacting with the MHSanaei/3x-ui panel API.

The module-level functions are stateless: they take the panel URL and the
session cookie and return ``(result, error)`` pairs.  Network failures and
unexpected payloads are surfaced as short error strings instead of
exceptions, so callers can show them to whoever pressed the button.

:class:`Panel` keeps the credentials, logs in lazily and retries once after a
401.  It is synchronous; the bot runs it in the default executor.
"""

from __future__ import annotations

import json
import logging
import os
import secrets
import string
import time
import uuid
from threading import RLock
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote, urljoin

import requests
from cachetools import TTLCache, cached
from cachetools.keys import hashkey

from core.client_cache import NUMERIC_FIELDS, CachedClientRecord

SESSION = requests.Session()
log = logging.getLogger("xui_bot.panel")

NOT_FOUND = "not found"
UNAUTHORIZED = "401 unauthorized"

FETCH_CACHE_TTL = int(os.getenv("FETCH_CACHE_TTL", "300"))
_links_cache = TTLCache(maxsize=256, ttl=FETCH_CACHE_TTL)
_links_lock = RLock()

_ALPHABET = string.ascii_lowercase + string.digits


def get_headers(token: str) -> Dict[str, str]:
    """Return headers (cookie based) for the given session token."""
    return {"Cookie": token}


def _url(panel_url: str, path: str) -> str:
    return urljoin(panel_url.rstrip('/') + '/', path.lstrip('/'))


def _unwrap(r: requests.Response) -> Tuple[Any, Optional[str]]:
    """Decode a ``{"success", "msg", "obj"}`` envelope."""
    if r.status_code == 401:
        return None, UNAUTHORIZED
    if r.status_code != 200:
        return None, f"{r.status_code} {r.text[:200]}"
    try:
        data = r.json() or {}
    except ValueError:
        return None, f"invalid JSON: {r.text[:200]}"
    if isinstance(data, dict) and data.get("success") is False:
        return None, data.get("msg") or "success=false"
    return (data.get("obj") if isinstance(data, dict) else data), None


def random_string(length: int) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def parse_settings(inbound: Dict) -> Dict:
    settings = inbound.get('settings') or '{}'
    try:
        return json.loads(settings) if isinstance(settings, str) else dict(settings)
    except (TypeError, ValueError):
        return {}


def parse_clients(inbound: Dict) -> List[Dict]:
    """Return the client documents embedded in an inbound's settings."""
    clients = parse_settings(inbound).get('clients') or []
    return [c for c in clients if isinstance(c, dict)]


def client_records(inbounds: List[Dict]) -> List[CachedClientRecord]:
    records = []
    for inbound in inbounds or []:
        inbound_id = int(inbound.get('id') or 0)
        protocol = inbound.get('protocol') or ''
        for pos, doc in enumerate(parse_clients(inbound)):
            records.append(CachedClientRecord.from_panel(inbound_id, pos, doc, protocol))
    return records


def client_usage(inbounds: List[Dict]) -> Dict[str, int]:
    """Bytes used (up + down) per email, from the inbounds' ``clientStats``."""
    usage: Dict[str, int] = {}
    for inbound in inbounds or []:
        for stat in inbound.get('clientStats') or []:
            email = stat.get('email')
            if email:
                usage[email] = int(stat.get('up') or 0) + int(stat.get('down') or 0)
    return usage


def fix_numeric_fields(doc: Dict) -> Dict:
    for name in NUMERIC_FIELDS:
        if isinstance(doc.get(name), float):
            doc[name] = int(doc[name])
    return doc


def build_client(
    email: str,
    days: int,
    tg_id: int,
    protocol: str,
    inbound: Optional[Dict] = None,
    limit_ip: int = 0,
    now_ms: Optional[int] = None,
) -> Dict:
    """Fresh client document with protocol-specific credentials."""
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    client: Dict[str, Any] = {
        "email": email,
        "enable": True,
        "expiryTime": now_ms + int(days) * 24 * 60 * 60 * 1000 if days > 0 else 0,
        "totalGB": 0,
        "tgId": int(tg_id),
        "subId": random_string(16),
        "limitIp": int(limit_ip),
        "comment": "",
        "reset": 0,
    }
    if protocol == "vmess":
        client["id"] = str(uuid.uuid4())
        client["security"] = "auto"
    elif protocol == "trojan":
        client["password"] = random_string(10)
    elif protocol == "shadowsocks":
        client["method"] = parse_settings(inbound or {}).get("method") or "aes-256-gcm"
        client["password"] = random_string(16)
    else:
        client["id"] = str(uuid.uuid4())
        client["flow"] = ""
    return client


def get_admin_token(panel_url: str, username: str, password: str) -> Tuple[Optional[str], Optional[str]]:
    """Authenticate against the panel and return a session token."""
    try:
        resp = SESSION.post(
            _url(panel_url, 'login'),
            data={"username": username, "password": password},
            timeout=15,
        )
        if resp.status_code != 200:
            return None, f"{resp.status_code} {resp.text[:200]}"
        jar = resp.cookies.get_dict()
        # Prefer known cookie names but fall back to any provided cookie.
        if '3x-ui' in jar:
            cookie_name, cookie_val = '3x-ui', jar['3x-ui']
        elif 'session' in jar:
            cookie_name, cookie_val = 'session', jar['session']
        elif jar:
            cookie_name, cookie_val = next(iter(jar.items()))
        else:
            return None, 'no session cookie'
        return f"{cookie_name}={cookie_val}", None
    except requests.RequestException as e:  # pragma: no cover - network errors
        return None, str(e)[:200]


def list_inbounds(panel_url: str, token: str) -> Tuple[Optional[List[Dict]], Optional[str]]:
    """Return list of inbounds or an error message."""
    try:
        r = SESSION.get(
            _url(panel_url, 'panel/api/inbounds/list'),
            headers={"accept": "application/json", **get_headers(token)},
            timeout=15,
        )
    except requests.RequestException as e:  # pragma: no cover - network errors
        return None, str(e)[:200]
    obj, err = _unwrap(r)
    if err:
        return None, err
    return list(obj or []), None


def get_client_traffics(panel_url: str, token: str, email: str) -> Tuple[Optional[Dict[str, int]], Optional[str]]:
    """Return ``{"up": .., "down": ..}`` byte counters for *email*."""
    try:
        r = SESSION.get(
            _url(panel_url, f"panel/api/inbounds/getClientTraffics/{quote(email, safe='')}"),
            headers={"accept": "application/json", **get_headers(token)},
            timeout=15,
        )
    except requests.RequestException as e:  # pragma: no cover - network errors
        return None, str(e)[:200]
    obj, err = _unwrap(r)
    if err:
        return None, err
    if not obj:
        return None, NOT_FOUND
    return {"up": int(obj.get('up', 0) or 0), "down": int(obj.get('down', 0) or 0)}, None


def get_server_status(panel_url: str, token: str) -> Tuple[Optional[Dict], Optional[str]]:
    """CPU, memory, uptime and xray state of the panel host."""
    try:
        r = SESSION.post(
            _url(panel_url, 'server/status'),
            headers={"accept": "application/json", **get_headers(token)},
            timeout=15,
        )
    except requests.RequestException as e:  # pragma: no cover - network errors
        return None, str(e)[:200]
    obj, err = _unwrap(r)
    if err:
        return None, err
    return dict(obj or {}), None


def add_client(panel_url: str, token: str, inbound_id: int, client: Dict) -> Tuple[bool, Optional[str]]:
    """Add *client* to inbound *inbound_id*."""
    payload = {
        "id": int(inbound_id),
        "settings": json.dumps({"clients": [fix_numeric_fields(dict(client))]}, separators=(",", ":")),
    }
    try:
        r = SESSION.post(
            _url(panel_url, 'panel/api/inbounds/addClient'),
            json=payload,
            headers={**get_headers(token), 'Content-Type': 'application/json'},
            timeout=20,
        )
    except requests.RequestException as e:  # pragma: no cover - network errors
        return False, str(e)[:200]
    _, err = _unwrap(r)
    return err is None, err


def update_client(panel_url: str, token: str, inbound_id: int, client_key: str, client: Dict) -> Tuple[bool, Optional[str]]:
    """Replace the client identified by *client_key* with the full document *client*."""
    payload = {
        "id": int(inbound_id),
        "settings": json.dumps({"clients": [fix_numeric_fields(dict(client))]}, separators=(",", ":")),
    }
    try:
        r = SESSION.post(
            _url(panel_url, f"panel/api/inbounds/updateClient/{quote(client_key, safe='')}"),
            json=payload,
            headers={**get_headers(token), 'Content-Type': 'application/json'},
            timeout=20,
        )
    except requests.RequestException as e:  # pragma: no cover - network errors
        return False, str(e)[:200]
    _, err = _unwrap(r)
    return err is None, err


def delete_client(panel_url: str, token: str, inbound_id: int, client_key: str) -> Tuple[bool, Optional[str]]:
    """Delete a client (uuid, trojan password or email) from an inbound."""
    try:
        r = SESSION.post(
            _url(panel_url, f"panel/api/inbounds/{int(inbound_id)}/delClient/{quote(client_key, safe='')}"),
            headers=get_headers(token),
            timeout=20,
        )
    except requests.RequestException as e:  # pragma: no cover - network errors
        return False, str(e)[:200]
    _, err = _unwrap(r)
    return err is None, err


class _LinkError(Exception):
    pass


@cached(cache=_links_cache, lock=_links_lock, key=lambda panel_url, token, email: hashkey(panel_url, email))
def _fetch_client_link(panel_url: str, token: str, email: str) -> str:
    try:
        r = SESSION.get(
            _url(panel_url, f"panel/api/inbounds/getClientLink/{quote(email, safe='')}"),
            headers={"accept": "application/json", **get_headers(token)},
            timeout=15,
        )
    except requests.RequestException as e:  # pragma: no cover - network errors
        raise _LinkError(str(e)[:200])
    obj, err = _unwrap(r)
    if err:
        raise _LinkError(err)
    if not obj:
        raise _LinkError(NOT_FOUND)
    return obj if isinstance(obj, str) else "\n".join(str(x) for x in obj)


def get_client_link(panel_url: str, token: str, email: str) -> Tuple[Optional[str], Optional[str]]:
    """Return the subscription/config link the panel generates for *email*.

    Successful lookups are memoised for ``FETCH_CACHE_TTL`` seconds; errors
    are raised out of the cached call, so a transient failure does not stick.
    """
    try:
        return _fetch_client_link(panel_url, token, email), None
    except _LinkError as e:
        return None, str(e)


def forget_client_link(email: str) -> None:
    with _links_lock:
        for key in [k for k in _links_cache.keys() if k[1] == email]:
            _links_cache.pop(key, None)


class Panel:
    """Credentialed view of one 3x-ui panel."""

    def __init__(self, panel_url: str, username: str, password: str, limit_ip: int = 0):
        self.panel_url = panel_url
        self.username = username
        self.password = password
        self.limit_ip = limit_ip
        self._token: Optional[str] = None
        self._lock = RLock()

    def login(self) -> Tuple[bool, Optional[str]]:
        token, err = get_admin_token(self.panel_url, self.username, self.password)
        if err:
            log.warning("panel login failed: %s", err)
            return False, err
        with self._lock:
            self._token = token
        return True, None

    def _call(self, fn, *args):
        with self._lock:
            token = self._token
        if token is None:
            ok, err = self.login()
            if not ok:
                return (False if fn in (add_client, update_client, delete_client) else None), err
            with self._lock:
                token = self._token
        result, err = fn(self.panel_url, token, *args)
        if err == UNAUTHORIZED:
            ok, lerr = self.login()
            if not ok:
                return result, f"re-login failed: {lerr}"
            with self._lock:
                token = self._token
            result, err = fn(self.panel_url, token, *args)
        return result, err

    # ---- listing ----
    def list_inbounds(self) -> Tuple[Optional[List[Dict]], Optional[str]]:
        return self._call(list_inbounds)

    def list_clients(self) -> Tuple[Optional[List[CachedClientRecord]], Optional[str]]:
        inbounds, err = self.list_inbounds()
        if err:
            return None, err
        return client_records(inbounds), None

    def find_client_by_tg_id(self, tg_id: int) -> Tuple[Optional[CachedClientRecord], Optional[str]]:
        records, err = self.list_clients()
        if err:
            return None, err
        for record in records:
            if record.tg_id and record.tg_id == int(tg_id):
                return record, None
        return None, NOT_FOUND

    def fetch_traffic(self, email: str) -> Tuple[Optional[Dict[str, int]], Optional[str]]:
        return self._call(get_client_traffics, email)

    def server_status(self) -> Tuple[Optional[Dict], Optional[str]]:
        return self._call(get_server_status)

    # ---- mutations ----
    def create_client(self, listing_id: int, client: Dict) -> Tuple[bool, Optional[str]]:
        return self._call(add_client, listing_id, client)

    def create_client_for(self, email: str, days: int, tg_id: int) -> Tuple[bool, Optional[str]]:
        """Create a client on the first inbound with generated credentials."""
        inbounds, err = self.list_inbounds()
        if err:
            return False, err
        if not inbounds:
            return False, "no inbounds available"
        first = inbounds[0]
        client = build_client(email, days, tg_id, first.get('protocol') or '', first, self.limit_ip)
        log.info("adding client %s to inbound %s", email, first.get('id'))
        return self.create_client(int(first.get('id') or 0), client)

    def update_client(self, listing_id: int, identifying_email: str, changes: Dict) -> Tuple[bool, Optional[str]]:
        """Apply *changes* to the client now called *identifying_email*.

        The live document is read back first and only the keys in *changes*
        are overwritten, so a stale copy never rolls back other fields.
        """
        inbounds, err = self.list_inbounds()
        if err:
            return False, err
        inbound = next((i for i in inbounds or [] if int(i.get('id') or 0) == int(listing_id)), None)
        if inbound is None:
            return False, f"inbound {listing_id} {NOT_FOUND}"
        current = next((c for c in parse_clients(inbound) if c.get('email') == identifying_email), None)
        if current is None:
            return False, f"client {identifying_email} {NOT_FOUND}"
        key = CachedClientRecord.from_panel(listing_id, 0, current, inbound.get('protocol') or '').client_key
        if not key:
            return False, f"client key missing for {identifying_email}"
        merged = {**current, **changes}
        ok, err = self._call(update_client, listing_id, key, merged)
        if ok:
            forget_client_link(identifying_email)
        return ok, err

    def delete_client(self, listing_id: int, client_key: str) -> Tuple[bool, Optional[str]]:
        return self._call(delete_client, listing_id, client_key)

    def get_subscription_link(self, email: str) -> Tuple[Optional[str], Optional[str]]:
        return self._call(get_client_link, email)
