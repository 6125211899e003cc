"""HTTP adapters for blob storage, contacts and geocoding.

Each adapter takes an ``aiohttp.ClientSession`` owned by the caller and
applies a total ``aiohttp.ClientTimeout`` to every request.  Transport
errors and non-2xx statuses surface as ``NetworkFailureError`` subclasses.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Optional
from urllib.parse import quote

import aiohttp

from wayguard.config import ServiceEndpoints
from wayguard.exceptions import GeocodingError, NetworkFailureError, UploadError
from wayguard.models import Coordinate, Destination, EmergencyContact

_logger = logging.getLogger(__name__)

MAPBOX_BASE_URL = "https://api.mapbox.com"


async def _request_json(
    http: aiohttp.ClientSession,
    method: str,
    url: str,
    *,
    endpoint: str,
    timeout: float,
    error_cls: type[NetworkFailureError] = NetworkFailureError,
    **kwargs: Any,
) -> Any:
    _logger.debug("%s %s", method, endpoint)
    try:
        async with http.request(
            method, url, timeout=aiohttp.ClientTimeout(total=timeout), **kwargs
        ) as resp:
            text = await resp.text()
            if resp.status < 200 or resp.status >= 300:
                raise error_cls(
                    f"HTTP {resp.status} from {endpoint}: {text[:200]}",
                    status_code=resp.status,
                    endpoint=endpoint,
                )
    except NetworkFailureError:
        raise
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        raise error_cls(f"Request to {endpoint} failed: {exc}", endpoint=endpoint) from exc

    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise error_cls(f"Invalid JSON from {endpoint}: {text[:200]}", endpoint=endpoint) from exc


def _supabase_headers(endpoints: ServiceEndpoints, access_token: Optional[str] = None) -> dict[str, str]:
    return {
        "apikey": endpoints.supabase_key,
        "authorization": f"Bearer {access_token or endpoints.supabase_key}",
    }


class SupabaseStorage:
    """Uploads recordings to a Supabase Storage bucket with public read."""

    def __init__(
        self,
        http: aiohttp.ClientSession,
        endpoints: ServiceEndpoints,
        timeout: float = 10.0,
    ) -> None:
        self._http = http
        self._endpoints = endpoints
        self._timeout = timeout

    def public_url(self, object_name: str) -> str:
        return (
            f"{self._endpoints.supabase_url}/storage/v1/object/public/"
            f"{self._endpoints.recordings_bucket}/{object_name}"
        )

    async def upload(self, data: bytes, content_type: str) -> str:
        if not data:
            raise UploadError("Refusing to upload an empty recording", endpoint="storage")

        object_name = f"recording-{int(time.time() * 1000)}.m4a"
        bucket = self._endpoints.recordings_bucket
        headers = _supabase_headers(self._endpoints)
        headers["content-type"] = content_type
        headers["x-upsert"] = "true"

        await _request_json(
            self._http,
            "POST",
            f"{self._endpoints.supabase_url}/storage/v1/object/{bucket}/{object_name}",
            endpoint=f"storage/{bucket}",
            timeout=self._timeout,
            error_cls=UploadError,
            data=data,
            headers=headers,
        )
        url = self.public_url(object_name)
        _logger.info("Uploaded %d bytes to %s", len(data), url)
        return url


class SupabaseContactStore:
    """Reads the traveler's emergency contacts from a PostgREST table."""

    def __init__(
        self,
        http: aiohttp.ClientSession,
        endpoints: ServiceEndpoints,
        user_id: str,
        access_token: Optional[str] = None,
        timeout: float = 10.0,
    ) -> None:
        self._http = http
        self._endpoints = endpoints
        self._user_id = user_id
        self._access_token = access_token
        self._timeout = timeout

    async def fetch_contacts(self) -> list[EmergencyContact]:
        table = self._endpoints.contacts_table
        rows = await _request_json(
            self._http,
            "GET",
            f"{self._endpoints.supabase_url}/rest/v1/{table}",
            endpoint=f"rest/{table}",
            timeout=self._timeout,
            params={"select": "*", "user_id": f"eq.{self._user_id}"},
            headers=_supabase_headers(self._endpoints, self._access_token),
        )
        if not isinstance(rows, list):
            raise NetworkFailureError(
                f"Expected a list of contacts from rest/{table}", endpoint=f"rest/{table}"
            )

        contacts = []
        for row in rows:
            number = str(row.get("phone_number") or "").strip()
            if not number:
                _logger.warning("Skipping contact %s without a phone number", row.get("id"))
                continue
            fields = {
                "name": row.get("contact_name") or row.get("name") or "",
                "phone_number": number,
            }
            if row.get("id") is not None:
                fields["id"] = str(row["id"])
            contacts.append(EmergencyContact(**fields))
        _logger.info("Loaded %d emergency contacts", len(contacts))
        return contacts


class MapboxGeocoder:
    """Address lookup and driving routes through the Mapbox web APIs."""

    def __init__(
        self,
        http: aiohttp.ClientSession,
        access_token: str,
        timeout: float = 10.0,
        base_url: str = MAPBOX_BASE_URL,
    ) -> None:
        self._http = http
        self._token = access_token
        self._timeout = timeout
        self._base_url = base_url.rstrip("/")

    async def suggest(self, query: str, limit: int = 5) -> list[Destination]:
        """Return up to ``limit`` candidate places for a partial address."""
        query = query.strip()
        if not query:
            return []
        body = await _request_json(
            self._http,
            "GET",
            f"{self._base_url}/geocoding/v5/mapbox.places/{quote(query)}.json",
            endpoint="geocoding",
            timeout=self._timeout,
            error_cls=GeocodingError,
            params={"access_token": self._token, "limit": str(limit)},
        )
        results = []
        for feature in (body or {}).get("features", []):
            center = feature.get("center")
            if not center or len(center) < 2:
                continue
            results.append(Destination(
                coordinate=Coordinate(latitude=center[1], longitude=center[0]),
                label=feature.get("place_name", ""),
            ))
        return results

    async def geocode(self, address: str) -> Optional[Coordinate]:
        matches = await self.suggest(address, limit=1)
        return matches[0].coordinate if matches else None

    async def route(self, origin: Coordinate, destination: Coordinate) -> list[Coordinate]:
        """Driving route from ``origin`` to ``destination`` as a polyline."""
        path = (
            f"{origin.longitude},{origin.latitude};"
            f"{destination.longitude},{destination.latitude}"
        )
        body = await _request_json(
            self._http,
            "GET",
            f"{self._base_url}/directions/v5/mapbox/driving/{path}",
            endpoint="directions",
            timeout=self._timeout,
            error_cls=GeocodingError,
            params={"access_token": self._token, "geometries": "geojson"},
        )
        routes = (body or {}).get("routes") or []
        if not routes:
            return []
        points = routes[0].get("geometry", {}).get("coordinates", [])
        return [Coordinate(latitude=lat, longitude=lon) for lon, lat in points]
