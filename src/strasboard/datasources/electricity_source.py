"""
Electricity consumption data source.

Authenticates against the supplier's customer portal (form login, then an
OAuth authorization-code exchange protected with PKCE), resolves the
customer's delivery point once, and fetches daily and monthly consumption
per tariff period.
"""

import asyncio
import base64
import hashlib
import secrets
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Optional
from urllib.parse import parse_qs, urlparse
from zoneinfo import ZoneInfo

from ..config import ElectricityConfig
from ..errors import (
    NoDataError,
    NotConfiguredError,
    SourceError,
    UpstreamError,
    UpstreamSemanticError,
)
from ..freshness import PublicationCutoff, local_datetime
from ..http_client import UpstreamClient
from ..log import get_structured_logger
from .base import DataSource, Result, utcnow

logger = get_structured_logger(__name__, component="electricity")

RETRY_TTL = timedelta(hours=1)
TOKEN_MARGIN = timedelta(minutes=5)
DAYS_KEPT = 14
MONTHS_KEPT = 2
TARIFF_CODES = ("HC", "HP", "BCHC", "BCHP", "BUHC", "BUHP", "RHC", "RHP")
SESSION_COOKIE = "cookieOauth"


@dataclass
class Consumption:
    """Consumption in kWh per tariff code for one day ("YYYY-MM-DD") or month ("YYYY-MM")"""

    date: str
    values: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"date": self.date, **self.values}


@dataclass
class ElectricityData:
    days: list[Consumption] = field(default_factory=list)
    months: list[Consumption] = field(default_factory=list)


@dataclass
class _AuthState:
    """Token and delivery point shared by all fetches of one source instance"""

    access_token: str = ""
    token_expiry: Optional[datetime] = None
    service_point_id: str = ""

    def token_valid(self, now: datetime) -> bool:
        return (
            bool(self.access_token)
            and self.token_expiry is not None
            and now + TOKEN_MARGIN < self.token_expiry
        )


def generate_pkce() -> tuple[str, str]:
    """Return a (verifier, S256 challenge) pair"""
    verifier = base64.urlsafe_b64encode(secrets.token_bytes(32)).rstrip(b"=").decode()
    digest = hashlib.sha256(verifier.encode()).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode()
    return verifier, challenge


def check_ser_error(body: Any) -> Optional[str]:
    """Portal errors come back as a list of informative messages"""
    if isinstance(body, dict) and body.get("messagesInformatifs"):
        return "; ".join(str(m) for m in body["messagesInformatifs"])
    return None


def aggregate_consumption(
    periods: dict[str, dict[str, float]], limit: int
) -> list[Consumption]:
    """Sort by date, keep the last `limit` entries and round to whole kWh"""
    keys = sorted(periods)[-limit:]
    result = []
    for key in keys:
        values = {}
        for tariff, value in periods[key].items():
            rounded = int(value + 0.5)
            if rounded == 0 or tariff not in TARIFF_CODES:
                continue
            values[tariff] = rounded
        result.append(Consumption(date=key, values=values))
    return result


def parse_consumption(contracts: list[dict[str, Any]]) -> ElectricityData:
    """Flatten contract periods into per-date tariff totals"""
    daily: dict[str, dict[str, float]] = {}
    monthly: dict[str, dict[str, float]] = {}

    for contract in contracts:
        postes = (contract.get("blocFournisseur") or {}).get("postesHorosaisonnier") or []
        for poste in postes:
            tariff = (poste.get("etiquette") or {}).get("mnemo")
            if not tariff:
                continue

            for entry in poste.get("consommationsJournalieres") or []:
                value = entry.get("consommation")
                parts = str(entry.get("date", "")).split("/")
                if value is None or len(parts) != 3:
                    continue
                day = f"{parts[2]}-{parts[1]}-{parts[0]}"
                daily.setdefault(day, {})[tariff] = float(value)

            for entry in poste.get("consommationsMensuelles") or []:
                month = f"{int(entry['annee'])}-{int(entry['mois']):02d}"
                monthly.setdefault(month, {})[tariff] = float(entry.get("consommation") or 0)

    return ElectricityData(
        days=aggregate_consumption(daily, DAYS_KEPT),
        months=aggregate_consumption(monthly, MONTHS_KEPT),
    )


def has_yesterday(data: ElectricityData, local_now: datetime) -> bool:
    """Whether the latest daily figure covers yesterday (local time)"""
    yesterday = (local_now.date() - timedelta(days=1)).isoformat()
    return bool(data.days) and data.days[-1].date >= yesterday


def history_start(today: date) -> date:
    """Last day of the month three months back, as the portal expects"""
    year, month = today.year, today.month - 2
    while month <= 0:
        month += 12
        year -= 1
    return date(year, month, 1) - timedelta(days=1)


class ElectricityDataSource(DataSource):
    """
    Daily and monthly electricity consumption.

    Yesterday's figures are published some time after `publication_hour`
    local time. Until they appear the source is retried hourly; once present
    the result stays fresh until the next day's publication hour.
    """

    description = "Daily and monthly electricity consumption"

    def __init__(self, config: ElectricityConfig, clock: Callable[[], datetime] = utcnow):
        self._config = config
        self._clock = clock
        self._tz = ZoneInfo(config.timezone)
        self._http = UpstreamClient()
        self._policy = PublicationCutoff(
            self._tz,
            first_cutoff=config.publication_hour,
            retry_ttl=RETRY_TTL,
            is_published=has_yesterday,
        )
        self._auth_lock = asyncio.Lock()
        self._auth = _AuthState()

    def name(self) -> str:
        return "electricity"

    def degraded_ttl(self) -> timedelta:
        return timedelta(hours=48)

    async def shutdown(self) -> None:
        await self._http.close()

    async def fetch(self) -> Result[ElectricityData]:
        now = self._clock()
        try:
            if not self._config.username or not self._config.password:
                raise NotConfiguredError("electricity not configured")
            try:
                await self._ensure_auth()
            except SourceError as e:
                raise type(e)(f"auth: {e.message}", e.retry_ttl) from e
            data = await self._fetch_consumption(now)
        except SourceError as e:
            logger.warning("Electricity fetch failed", error=str(e))
            return Result.from_error(e, now=now)

        expires_at = self._policy.expires_at(now, data)
        if has_yesterday(data, now.astimezone(self._tz)):
            logger.debug("Yesterday's consumption available", expires_at=expires_at.isoformat())
        return Result.success_until(data, expires_at, now=now)

    async def _ensure_auth(self) -> None:
        """
        Ensure a valid access token and delivery point.

        The check-then-refresh sequence runs under a lock so concurrent cold
        fetches perform a single login. A delivery point lookup that failed
        is retried on the next fetch, reusing the token if still valid.
        """
        async with self._auth_lock:
            if not self._auth.token_valid(self._clock()):
                logger.info("Authenticating")
                verifier, challenge = generate_pkce()
                cookie = await self._login()
                code = await self._authorize(cookie, challenge)
                await self._exchange_token(code, verifier)

            if not self._auth.service_point_id:
                await self._fetch_service_point()

    async def _login(self) -> str:
        """Log in and return the session cookie"""
        response, body = await self._http.post_form(
            f"{self._config.api_url}/auth/externe/authentification",
            {
                "username": self._config.username,
                "password": self._config.password,
                "client_id": self._config.client_id,
            },
        )
        body = body or {}
        if str(body.get("code")) != "0":
            raise UpstreamSemanticError(f"login: {body.get('libelle') or 'rejected'}")

        cookie = response.cookies.get(SESSION_COOKIE)
        if not cookie:
            raise UpstreamError("login: no session cookie")
        return cookie

    async def _authorize(self, cookie: str, challenge: str) -> str:
        """Obtain an authorization code from the redirect location"""
        response = await self._http.get_redirect(
            f"{self._config.api_url}/auth/authorize-internet",
            params={
                "response_type": "code",
                "code_challenge": challenge,
                "code_challenge_method": "S256",
                "client_id": self._config.client_id,
            },
            headers={"Cookie": f"{SESSION_COOKIE}={cookie}"},
        )
        location = response.headers.get("location")
        if not location:
            raise UpstreamError("authorize: no redirect")

        codes = parse_qs(urlparse(location).query).get("code")
        if not codes:
            raise UpstreamError("authorize: no authorization code")
        return codes[0]

    async def _exchange_token(self, code: str, verifier: str) -> None:
        _, body = await self._http.post_form(
            f"{self._config.api_url}/auth/tokenUtilisateurInternet",
            {
                "client_id": self._config.client_id,
                "code": code,
                "grant_type": "authorization_code",
                "code_verifier": verifier,
            },
        )
        body = body or {}
        if body.get("error"):
            raise UpstreamSemanticError(f"token: {body['error']}")
        if not body.get("access_token"):
            raise UpstreamError("token: no access token")

        now = self._clock()
        self._auth.access_token = f"{body.get('token_type', 'Bearer')} {body['access_token']}"
        self._auth.token_expiry = now + timedelta(seconds=int(body.get("expires_in") or 0))
        logger.info("Authenticated", expires_in=body.get("expires_in"))

    async def _fetch_service_point(self) -> None:
        body = await self._http.get_json(
            f"{self._config.api_url}/rest/produits/pointsAccesServicesClient",
            params={"expand": "pointDeService"},
            headers={"Authorization": self._auth.access_token},
        )
        if not body:
            raise NoDataError("service point: none found")

        try:
            point = body[0]
            self._auth.service_point_id = str(point["id"])
        except (KeyError, TypeError) as e:
            raise UpstreamError(f"service point: malformed response: {e}") from e
        logger.info(
            "Resolved service point",
            reference=(point.get("pointDeService") or {}).get("reference"),
        )

    async def _fetch_consumption(self, now: datetime) -> ElectricityData:
        today = now.astimezone(self._tz).date()
        payload = {
            "typeObjet": "DonneesHistoriqueMesureRepresentation",
            "dateDebut": local_datetime(history_start(today), 0, self._tz).isoformat(),
            "dateFin": local_datetime(today + timedelta(days=1), 0, self._tz).isoformat(),
            "pointAccesServicesClient": {
                "typeObjet": "produit.PointAccesServicesClient",
                "id": self._auth.service_point_id,
            },
            "groupesDeGrandeurs": [
                {"typeObjet": "produit.GroupeGrandeur", "codeGroupeGrandeur": {"code": "3"}},
            ],
        }

        body = await self._http.post_json(
            f"{self._config.api_url}/rest/interfaces/"
            f"{self._config.client_id.lower()}/historiqueDeMesure",
            payload,
            headers={"Authorization": self._auth.access_token},
            error_check=check_ser_error,
        )

        contracts = (body or {}).get("periodesActivite") or []
        if not contracts:
            raise NoDataError("no contract data")

        try:
            return parse_consumption(contracts)
        except (KeyError, TypeError, ValueError) as e:
            raise UpstreamError(f"malformed consumption data: {e}") from e
