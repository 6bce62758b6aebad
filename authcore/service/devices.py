from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from datetime import datetime
from ipaddress import ip_address
from typing import Dict, List, Optional

from authcore.logging import get_logger
from authcore.storage.models import DeviceInfo, RefreshToken, utcnow

logger = get_logger(__name__)

_BROWSERS = (
    ("Edge", re.compile(r"Edg(?:e|A|iOS)?/([\d.]+)")),
    ("Opera", re.compile(r"OPR/([\d.]+)")),
    ("Firefox", re.compile(r"(?:Firefox|FxiOS)/([\d.]+)")),
    ("Chrome", re.compile(r"(?:Chrome|CriOS)/([\d.]+)")),
    ("Safari", re.compile(r"Version/([\d.]+).*Safari/")),
)

_OPERATING_SYSTEMS = (
    ("iOS", re.compile(r"(?:iPhone|iPad|iPod).*? OS ([\d_]+)")),
    ("Android", re.compile(r"Android ([\d.]+)")),
    ("Windows", re.compile(r"Windows NT ([\d.]+)")),
    ("macOS", re.compile(r"Mac OS X ([\d_.]+)")),
    ("Linux", re.compile(r"Linux")),
)


def _parse_browser(user_agent: str) -> Optional[str]:
    for name, pattern in _BROWSERS:
        match = pattern.search(user_agent)
        if match:
            return f"{name} {match.group(1).split('.')[0]}"
    return None


def _parse_os(user_agent: str) -> Optional[str]:
    for name, pattern in _OPERATING_SYSTEMS:
        match = pattern.search(user_agent)
        if match:
            version = match.group(1).replace("_", ".") if match.groups() else ""
            return f"{name} {version}".strip()
    return None


def _device_type(user_agent: str) -> str:
    if re.search(r"iPad|Tablet", user_agent) or (
        "Android" in user_agent and "Mobile" not in user_agent
    ):
        return "tablet"
    if re.search(r"Mobi|iPhone|iPod", user_agent):
        return "mobile"
    return "desktop"


def approximate_location(ip_addr: Optional[str]) -> str:
    if not ip_addr:
        return "Unknown"
    try:
        parsed = ip_address(ip_addr.strip())
    except ValueError:
        return "Unknown"
    if parsed.is_private or parsed.is_loopback or parsed.is_link_local:
        return "Local"
    # No geo database is bundled; public addresses stay unresolved
    return "Unknown"


def device_id_for(user_agent: Optional[str], ip_addr: Optional[str]) -> str:
    fingerprint = f"{user_agent or ''}|{ip_addr or ''}"
    return hashlib.sha256(fingerprint.encode()).hexdigest()[:16]


def fingerprint(user_agent: Optional[str], ip_addr: Optional[str]) -> DeviceInfo:
    """Derive a device descriptor from connection metadata."""
    ua = user_agent or ""
    browser = _parse_browser(ua)
    os_name = _parse_os(ua)
    kind = _device_type(ua)
    if kind in {"mobile", "tablet"}:
        name = f"{os_name or 'Unknown'} {kind.title()} ({(browser or 'Browser').split()[0]})"
    elif os_name:
        name = f"{os_name.split()[0]} Computer ({(browser or 'Browser').split()[0]})"
    else:
        name = f"Unknown Device ({(browser or 'Unknown Browser').split()[0]})"
    return DeviceInfo(
        device_id=device_id_for(user_agent, ip_addr),
        name=name,
        type=kind,
        os=os_name or "Unknown OS",
        browser=browser or "Unknown Browser",
        location=approximate_location(ip_addr),
        ip_addr=ip_addr,
        user_agent=user_agent,
    )


@dataclass
class SessionView:
    """One device's live sessions, derived from refresh token rows."""

    device_id: str
    name: str
    type: str
    os: str
    browser: str
    location: str
    ip_addr: Optional[str]
    last_used_at: datetime
    created_at: datetime
    trusted: bool
    active_tokens: int
    current: bool = False


@dataclass
class DeviceStanding:
    """What past refresh tokens say about a device at login time."""

    has_history: bool
    known: bool
    trusted: bool


class DeviceRegistry:
    """Read-side view over refresh tokens grouped by device."""

    def __init__(self, store) -> None:
        self.store = store

    def list_sessions(
        self, account_id: str, *, current_device_id: str | None = None
    ) -> List[SessionView]:
        now = utcnow()
        grouped: Dict[str, List[RefreshToken]] = {}
        for record in self.store.list_refresh_tokens(account_id, active_only=True):
            if record.is_usable(now):
                grouped.setdefault(record.device_id, []).append(record)
        views: List[SessionView] = []
        for device_id, records in grouped.items():
            latest = max(records, key=lambda r: r.last_used_at)
            device = latest.device or DeviceInfo(device_id=device_id)
            views.append(
                SessionView(
                    device_id=device_id,
                    name=device.name,
                    type=device.type,
                    os=device.os,
                    browser=device.browser,
                    location=device.location,
                    ip_addr=device.ip_addr,
                    last_used_at=latest.last_used_at,
                    created_at=min(r.created_at for r in records),
                    trusted=any(r.trusted for r in records),
                    active_tokens=len(records),
                    current=device_id == current_device_id,
                )
            )
        views.sort(key=lambda v: v.last_used_at, reverse=True)
        return views

    def standing(self, account_id: str, device_id: str) -> DeviceStanding:
        records = self.store.list_refresh_tokens(account_id)
        mine = [record for record in records if record.device_id == device_id]
        return DeviceStanding(
            has_history=bool(records),
            known=bool(mine),
            trusted=any(record.trusted for record in mine),
        )

    def set_trusted(self, account_id: str, device_id: str, trusted: bool) -> bool:
        updated = self.store.set_device_trust(account_id, device_id, trusted)
        if updated:
            logger.info(
                "device_trust_updated", account_id=account_id, device_id=device_id, trusted=trusted
            )
        return updated > 0
