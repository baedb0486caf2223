from __future__ import annotations

import ipaddress
import math
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import httpx

from keyward.config import Settings
from keyward.logging import get_logger

logger = get_logger(__name__)

EARTH_RADIUS_KM = 6371.0088


@dataclass(frozen=True)
class GeoPoint:
    country: Optional[str]
    latitude: Optional[float]
    longitude: Optional[float]

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def _point_from(data: Dict[str, Any]) -> Optional[GeoPoint]:
    country = data.get("country") or data.get("countryCode") or data.get("country_code")
    lat = data.get("lat", data.get("latitude"))
    lon = data.get("lon", data.get("longitude"))
    try:
        lat = float(lat) if lat is not None else None
        lon = float(lon) if lon is not None else None
    except (TypeError, ValueError):
        lat = lon = None
    if not country and lat is None:
        return None
    return GeoPoint(country=country, latitude=lat, longitude=lon)


class GeoResolver:
    """IP -> (country, lat, lon).

    Static ``GEO_STATIC_MAP`` entries (exact IPs or CIDR ranges) win; otherwise
    an optional HTTP lookup at ``GEOIP_URL``. Private, loopback and unparseable
    addresses resolve to ``None`` and contribute no geo factors.
    """

    def __init__(self, settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.settings = settings
        self._transport = transport
        self._exact: Dict[str, GeoPoint] = {}
        self._networks: List[Tuple[ipaddress._BaseNetwork, GeoPoint]] = []
        self._cache: Dict[str, Optional[GeoPoint]] = {}
        self._cache_lock = threading.Lock()
        for key, value in (settings.geo_static_map or {}).items():
            point = _point_from(value or {})
            if point is None:
                continue
            if "/" in key:
                try:
                    self._networks.append((ipaddress.ip_network(key, strict=False), point))
                except ValueError:
                    logger.warning("geo_static_entry_invalid", entry=key)
            else:
                self._exact[key] = point

    def _static(self, ip: str, addr) -> Optional[GeoPoint]:
        if ip in self._exact:
            return self._exact[ip]
        for network, point in self._networks:
            if addr.version == network.version and addr in network:
                return point
        return None

    async def resolve(self, ip: Optional[str]) -> Optional[GeoPoint]:
        if not ip:
            return None
        try:
            addr = ipaddress.ip_address(ip)
        except ValueError:
            return None
        static = self._static(ip, addr)
        if static is not None:
            return static
        if addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_reserved:
            return None
        if not self.settings.geoip_url:
            return None
        with self._cache_lock:
            if ip in self._cache:
                return self._cache[ip]
        point = await self._lookup(ip)
        with self._cache_lock:
            if len(self._cache) > 10000:
                self._cache.clear()
            self._cache[ip] = point
        return point

    async def _lookup(self, ip: str) -> Optional[GeoPoint]:
        url = self.settings.geoip_url.format(ip=ip)
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.geoip_timeout_seconds,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                response = await client.get(url, headers={"Accept": "application/json"})
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning("geoip_lookup_http_error", status_code=exc.response.status_code)
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("geoip_lookup_failed", error=str(exc))
            return None
        if not isinstance(data, dict) or data.get("status") == "fail":
            return None
        return _point_from(data)
