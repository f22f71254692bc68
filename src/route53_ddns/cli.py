#!/usr/bin/env python3
"""route53-ddns - Dynamic DNS for Amazon Route53

Keeps one or more Route53 address records (A / AAAA) pointed at the host's
current public address. Each poll discovers the public address from a list of
"what is my IP" services, compares it with the last address applied to every
configured record, and upserts only the records that drifted.

Configuration file (YAML, see CONFIG_PATH):

    poll_interval_seconds: 300
    poll_jitter_seconds: 30
    consensus: false            # require a majority of sources to agree
    source_timeout_seconds: 5
    state_path: ""              # JSON state file, empty = in-memory only
    aws:
      region: us-east-1
      profile: ""
      access_key_id: ""         # optional, default credential chain otherwise
      secret_access_key: ""
      session_token: ""
    sources:
      ipv4: ["https://checkip.amazonaws.com", "https://api.ipify.org"]
      ipv6: ["https://api6.ipify.org"]
    retry:
      max_attempts: 5
      base_delay_seconds: 1
      max_delay_seconds: 30
      max_total_wait_seconds: 120
    records:
      - zone_name: example.com  # hosted zone looked up by name
        record_name: home       # -> home.example.com
        ipv4: true              # A record
        ipv6: true              # AAAA record
        ttl_seconds: 300
      - zone_id: Z0123456789ABC
        name: vpn.example.com
        type: AAAA
        ttl: 60
      - zone_name: example.org  # zone owned by another AWS account
        record_name: home
        aws:                    # overrides the global aws block for this record
          profile: other-account

Environment variables:

    CONFIG_PATH            Path to the YAML config file
                           (default: /config/route53-ddns.yaml)
    SYNC_MODE              "once" or "watch" (polling loop) (default: watch)
    POLL_INTERVAL_SECONDS  Poll interval when the config file omits it (default: 300)
    POLL_JITTER_SECONDS    Upper bound of random delay added to each interval (default: 30)
    LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)
    STATE_PATH             JSON state file path when the config file omits it.
                           Empty keeps state in memory, so the first poll after
                           a restart upserts every record once (default: empty)
    AWS_REGION             Region for the Route53 client (default: us-east-1)
    AWS_PROFILE            Named AWS profile (optional)
"""

from __future__ import annotations

import argparse
import ipaddress
import json
import logging
import os
import random
import signal
import sys
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set
from urllib.parse import urlparse

import boto3
import requests
import yaml
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    NoCredentialsError,
    PartialCredentialsError,
)

# =============================================================================
# Configuration
# =============================================================================

CONFIG_PATH = os.getenv("CONFIG_PATH", "/config/route53-ddns.yaml")

# Runtime configuration
SYNC_MODE = os.getenv("SYNC_MODE", "watch")
POLL_INTERVAL_SECONDS = int(os.getenv("POLL_INTERVAL_SECONDS", "300"))
POLL_JITTER_SECONDS = int(os.getenv("POLL_JITTER_SECONDS", "30"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
STATE_PATH = os.getenv("STATE_PATH", "")

# AWS configuration
AWS_REGION = os.getenv("AWS_REGION", "us-east-1")
AWS_PROFILE = os.getenv("AWS_PROFILE", "")

DEFAULT_IPV4_SOURCES = [
    "https://checkip.amazonaws.com",
    "https://api.ipify.org",
    "https://ifconfig.me/ip",
]
DEFAULT_IPV6_SOURCES = [
    "https://api6.ipify.org",
    "https://ipv6.icanhazip.com",
    "https://v6.ident.me",
]
# Longest source response accepted; an address literal or {"ip": ...} is far shorter.
MAX_ADDRESS_RESPONSE_CHARS = 256

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Enums
# =============================================================================


class RecordType(Enum):
    """Address record types this agent manages."""

    A = "A"
    AAAA = "AAAA"

    @property
    def family(self) -> int:
        """IP version whose addresses this record type holds."""
        return 4 if self is RecordType.A else 6


class UpdateStatus(Enum):
    APPLIED = "applied"
    FAILED = "failed"


class FailureKind(Enum):
    """Failure classification for an update attempt.

    TRANSIENT: rate limiting, network or server trouble. Likely to succeed
               on retry.

    PERMANENT: configuration-rooted (credentials, missing zone, malformed
               record). Retrying cannot help.
    """

    TRANSIENT = "transient"
    PERMANENT = "permanent"


class SchedulerPhase(Enum):
    IDLE = "idle"
    POLLING = "polling"
    COMPARING = "comparing"
    UPDATING = "updating"


# =============================================================================
# Errors
# =============================================================================


class ConfigError(Exception):
    """Raised when the configuration is missing or invalid at startup."""


class ResolutionError(Exception):
    """No public address could be determined this cycle."""


class SourcesExhaustedError(ResolutionError):
    """Every address source failed, timed out, or returned malformed data."""


class NoConsensusError(ResolutionError):
    """Address sources disagreed and no address reached a majority."""

    def __init__(self, message: str, votes: Dict[str, int]):
        super().__init__(message)
        self.votes = votes


class ProviderError(Exception):
    """Typed error raised by DNSProvider implementations."""

    transient = False


class ThrottledError(ProviderError):
    transient = True


class ProviderUnavailableError(ProviderError):
    transient = True


class UnauthorizedError(ProviderError):
    pass


class NotFoundError(ProviderError):
    pass


class RecordValidationError(ProviderError):
    pass


# =============================================================================
# Data Classes
# =============================================================================


def _normalize_fqdn(name: str) -> str:
    name = name.strip().lower()
    return name if name.endswith(".") else f"{name}."


def _normalize_zone_id(zone_id: str) -> str:
    """Strip the '/hostedzone/' prefix Route53 puts on zone ids."""
    return zone_id.strip().rsplit("/", 1)[-1]


@dataclass(frozen=True)
class ManagedRecord:
    """A DNS address record this agent keeps in sync."""

    zone_id: str
    name: str
    record_type: RecordType
    ttl: int = 300

    def __post_init__(self) -> None:
        record_type = self.record_type
        if isinstance(record_type, str):
            record_type = RecordType(record_type.strip().upper())
        object.__setattr__(self, "record_type", record_type)
        object.__setattr__(self, "name", _normalize_fqdn(self.name))
        object.__setattr__(self, "zone_id", _normalize_zone_id(self.zone_id))

    @property
    def key(self) -> str:
        """Stable identity used in the state file."""
        return f"{self.zone_id}/{self.name}/{self.record_type.value}"

    def __str__(self) -> str:
        return f"{self.name} ({self.record_type.value})"


@dataclass(frozen=True)
class AddressObservation:
    """A public address discovered during one poll."""

    address: str
    source: str
    observed_at: float


@dataclass
class RecordState:
    """What we believe is live for a ManagedRecord."""

    last_applied: Optional[str] = None
    last_updated: Optional[float] = None
    consecutive_failures: int = 0
    last_error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_applied": self.last_applied,
            "last_updated": self.last_updated,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> RecordState:
        last_applied = data.get("last_applied")
        last_updated = data.get("last_updated")
        return cls(
            last_applied=str(last_applied) if last_applied else None,
            last_updated=float(last_updated) if last_updated is not None else None,
            consecutive_failures=int(data.get("consecutive_failures") or 0),
            last_error=str(data.get("last_error") or ""),
        )


@dataclass(frozen=True)
class UpdatePlan:
    """A record that must be moved to a freshly observed address."""

    record: ManagedRecord
    observation: AddressObservation

    @property
    def address(self) -> str:
        return self.observation.address


@dataclass(frozen=True)
class ChangeResult:
    """A write confirmed by the DNS provider."""

    value: str
    change_id: str = ""
    status: str = ""


@dataclass(frozen=True)
class UpdateOutcome:
    """Result of UpdateExecutor.apply. Never an exception."""

    status: UpdateStatus
    value: str = ""
    change_id: str = ""
    failure: Optional[FailureKind] = None
    reason: str = ""
    attempts: int = 0

    @classmethod
    def applied(cls, value: str, *, change_id: str = "", attempts: int = 1) -> UpdateOutcome:
        return cls(status=UpdateStatus.APPLIED, value=value, change_id=change_id, attempts=attempts)

    @classmethod
    def failed(cls, kind: FailureKind, reason: str, *, attempts: int = 0) -> UpdateOutcome:
        return cls(status=UpdateStatus.FAILED, failure=kind, reason=reason, attempts=attempts)

    @property
    def ok(self) -> bool:
        return self.status is UpdateStatus.APPLIED


@dataclass(frozen=True)
class AddressSource:
    """An external "what is my address" endpoint."""

    name: str
    url: str

    @classmethod
    def from_url(cls, url: str) -> AddressSource:
        url = url.strip()
        return cls(name=urlparse(url).netloc or url, url=url)


@dataclass(frozen=True)
class AwsCredentials:
    access_key_id: str
    secret_access_key: str
    session_token: str = ""

    def __repr__(self) -> str:
        return (
            "AwsCredentials(access_key_id='********', secret_access_key='********', "
            "session_token='********')"
        )

    __str__ = __repr__


@dataclass(frozen=True)
class AwsSettings:
    """Region and identity used to reach Route53.

    The global ``aws`` block gives the default; a record may carry its own
    block to live in a hosted zone owned by another account.
    """

    region: str = "us-east-1"
    profile: str = ""
    credentials: Optional[AwsCredentials] = None

    def describe(self) -> str:
        if self.credentials is not None:
            identity = "static credentials"
        elif self.profile:
            identity = f"profile '{self.profile}'"
        else:
            identity = "default credential chain"
        return f"{identity} in {self.region or 'default region'}"


# =============================================================================
# DNS Provider Interface and Implementations
# =============================================================================


class DNSProvider(ABC):
    """Abstract base class for DNS providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Test connection to the DNS provider."""
        pass

    @abstractmethod
    def find_hosted_zone_id(self, zone_name: str) -> Optional[str]:
        """Look up the id of the hosted zone named ``zone_name``."""
        pass

    @abstractmethod
    def upsert_record(self, record: ManagedRecord, value: str) -> ChangeResult:
        """Create or replace ``record`` with a single ``value``.

        Raises a ProviderError subclass on failure.
        """
        pass


class Route53DNSProvider(DNSProvider):
    """Amazon Route53 DNS provider implementation."""

    THROTTLE_CODES = {
        "Throttling",
        "ThrottlingException",
        "PriorRequestNotComplete",
        "RequestLimitExceeded",
        "RequestThrottled",
        "TooManyRequestsException",
    }
    UNAVAILABLE_CODES = {"ServiceUnavailable", "InternalFailure", "InternalError"}
    UNAUTHORIZED_CODES = {
        "AccessDenied",
        "AccessDeniedException",
        "InvalidClientTokenId",
        "SignatureDoesNotMatch",
        "UnrecognizedClientException",
        "ExpiredToken",
        "ExpiredTokenException",
    }
    NOT_FOUND_CODES = {"NoSuchHostedZone"}

    def __init__(
        self,
        region: str = "us-east-1",
        profile: str = "",
        credentials: Optional[AwsCredentials] = None,
        timeout_seconds: float = 10.0,
        client: Any = None,
    ):
        self._client = client or self._create_client(region, profile, credentials, timeout_seconds)

    @staticmethod
    def _create_client(
        region: str,
        profile: str,
        credentials: Optional[AwsCredentials],
        timeout_seconds: float,
    ) -> Any:
        session_kwargs: Dict[str, Any] = {"region_name": region or None}
        if credentials is not None:
            session_kwargs["aws_access_key_id"] = credentials.access_key_id
            session_kwargs["aws_secret_access_key"] = credentials.secret_access_key
            session_kwargs["aws_session_token"] = credentials.session_token or None
        elif profile:
            session_kwargs["profile_name"] = profile
        session = boto3.Session(**session_kwargs)
        # UpdateExecutor owns retries, so botocore makes a single attempt.
        config = Config(
            connect_timeout=timeout_seconds,
            read_timeout=timeout_seconds,
            retries={"max_attempts": 1, "mode": "standard"},
        )
        return session.client("route53", config=config)

    @property
    def name(self) -> str:
        return "Route53"

    def test_connection(self) -> bool:
        try:
            self._client.get_hosted_zone_count()
            logger.info(f"{self.name} connection successful")
            return True
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False

    def find_hosted_zone_id(self, zone_name: str) -> Optional[str]:
        dns_name = _normalize_fqdn(zone_name)
        try:
            response = self._client.list_hosted_zones_by_name(DNSName=dns_name, MaxItems="1")
        except (ClientError, BotoCoreError) as e:
            raise self._translate_error(e) from e

        for zone in response.get("HostedZones", []):
            if str(zone.get("Name", "")).lower() == dns_name:
                return _normalize_zone_id(str(zone["Id"]))
        return None

    def upsert_record(self, record: ManagedRecord, value: str) -> ChangeResult:
        change_batch = {
            "Comment": f"route53-ddns update for {record.name}",
            "Changes": [
                {
                    "Action": "UPSERT",
                    "ResourceRecordSet": {
                        "Name": record.name,
                        "Type": record.record_type.value,
                        "TTL": record.ttl,
                        "ResourceRecords": [{"Value": value}],
                    },
                }
            ],
        }
        try:
            response = self._client.change_resource_record_sets(
                HostedZoneId=record.zone_id, ChangeBatch=change_batch
            )
        except (ClientError, BotoCoreError) as e:
            raise self._translate_error(e) from e

        change_info = response.get("ChangeInfo") or {}
        return ChangeResult(
            value=value,
            change_id=_normalize_zone_id(str(change_info.get("Id") or "")),
            status=str(change_info.get("Status") or ""),
        )

    @classmethod
    def _translate_error(cls, exc: Exception) -> ProviderError:
        """Map botocore exceptions onto the ProviderError taxonomy."""
        if isinstance(exc, (NoCredentialsError, PartialCredentialsError)):
            return UnauthorizedError(str(exc))
        if not isinstance(exc, ClientError):
            # Connection errors, timeouts and the like.
            return ProviderUnavailableError(str(exc))

        error = exc.response.get("Error", {})
        code = str(error.get("Code") or "")
        message = str(error.get("Message") or exc)
        status = int(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0)
        detail = f"{code}: {message}" if code else message

        if code in cls.THROTTLE_CODES or status == 429:
            return ThrottledError(detail)
        if code in cls.UNAVAILABLE_CODES or status >= 500:
            return ProviderUnavailableError(detail)
        if code in cls.UNAUTHORIZED_CODES or status in (401, 403):
            return UnauthorizedError(detail)
        if code in cls.NOT_FOUND_CODES:
            return NotFoundError(detail)
        return RecordValidationError(detail)


def create_route53_provider(settings: AwsSettings) -> DNSProvider:
    return Route53DNSProvider(
        region=settings.region,
        profile=settings.profile,
        credentials=settings.credentials,
    )


def create_dns_provider(config: AgentConfig) -> DNSProvider:
    """Factory function to create the DNS provider for the global aws settings."""
    return create_route53_provider(config.aws)


class ProviderPool:
    """One DNS provider per distinct set of AWS settings.

    Records without their own ``aws`` block share the default provider.
    Providers for other settings are created on first use and must pass
    their connection check.
    """

    def __init__(
        self,
        default: DNSProvider,
        default_settings: Optional[AwsSettings] = None,
        factory: Callable[[AwsSettings], DNSProvider] = create_route53_provider,
    ):
        self._default = default
        self._factory = factory
        self._providers: Dict[AwsSettings, DNSProvider] = {}
        if default_settings is not None:
            self._providers[default_settings] = default

    def get(self, settings: Optional[AwsSettings]) -> DNSProvider:
        if settings is None:
            return self._default
        provider = self._providers.get(settings)
        if provider is None:
            provider = self._factory(settings)
            if not provider.test_connection():
                raise ConfigError(f"Cannot connect to {provider.name} with {settings.describe()}")
            logger.info(f"Using a separate {provider.name} client for {settings.describe()}")
            self._providers[settings] = provider
        return provider


# =============================================================================
# Address Resolver
# =============================================================================


def _parse_address(body: str, family: int) -> str:
    """Extract and validate an address literal from a source response.

    Accepts a bare address or a JSON object carrying it under "ip" or
    "address". Returns the canonical text form.
    """
    text = (body or "").strip()
    if len(text) > MAX_ADDRESS_RESPONSE_CHARS:
        raise ValueError(f"response too long ({len(text)} characters)")
    if text.startswith("{"):
        payload = json.loads(text)
        text = str(payload.get("ip") or payload.get("address") or "").strip()
    if not text:
        raise ValueError("empty response")
    address = ipaddress.ip_address(text)
    if address.version != family:
        raise ValueError(f"expected an IPv{family} address, got {address}")
    return str(address)


class AddressResolver:
    """Discovers the public address of one IP family.

    Sources are tried in order and the first well-formed answer wins. In
    consensus mode every source is queried concurrently and an address is
    only accepted once more than half of the sources agree on it.
    """

    def __init__(
        self,
        sources: List[AddressSource],
        *,
        family: int = 4,
        timeout_seconds: float = 5.0,
        consensus: bool = False,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
    ):
        if not sources:
            raise ValueError("at least one address source is required")
        if family not in (4, 6):
            raise ValueError(f"unsupported address family: {family}")
        self._sources = list(sources)
        self._family = family
        self._timeout = timeout_seconds
        self._consensus = consensus
        self._session = session or requests.Session()
        self._clock = clock

    @property
    def family(self) -> int:
        return self._family

    @property
    def sources(self) -> List[AddressSource]:
        return list(self._sources)

    def resolve(self) -> AddressObservation:
        if self._consensus:
            return self._resolve_consensus()
        return self._resolve_first()

    def _query(self, source: AddressSource, get: Callable[..., Any]) -> str:
        response = get(source.url, timeout=self._timeout)
        response.raise_for_status()
        return _parse_address(response.text, self._family)

    def _try_source(
        self, source: AddressSource, get: Optional[Callable[..., Any]] = None
    ) -> Optional[str]:
        try:
            return self._query(source, get or self._session.get)
        except requests.exceptions.RequestException as e:
            logger.warning(f"Address source '{source.name}' failed: {e}")
        except (ValueError, RecursionError) as e:
            logger.warning(f"Address source '{source.name}' returned malformed data: {e}")
        return None

    def _resolve_first(self) -> AddressObservation:
        for source in self._sources:
            address = self._try_source(source)
            if address:
                logger.debug(f"Address source '{source.name}' reported {address}")
                return AddressObservation(
                    address=address, source=source.name, observed_at=self._clock()
                )
        raise SourcesExhaustedError(
            f"No valid IPv{self._family} address from {len(self._sources)} source(s)"
        )

    def _resolve_consensus(self) -> AddressObservation:
        # requests.Session is not thread-safe, so each concurrent query uses its own.
        with ThreadPoolExecutor(max_workers=len(self._sources)) as pool:
            answers = list(
                pool.map(lambda source: self._try_source(source, requests.get), self._sources)
            )

        voters: Dict[str, List[str]] = {}
        for source, address in zip(self._sources, answers):
            if address:
                voters.setdefault(address, []).append(source.name)
        votes = {address: len(names) for address, names in voters.items()}

        required = len(self._sources) // 2 + 1
        if votes:
            best = max(votes, key=lambda address: votes[address])
            if votes[best] >= required:
                return AddressObservation(
                    address=best,
                    source=",".join(voters[best]),
                    observed_at=self._clock(),
                )
        raise NoConsensusError(
            f"No IPv{self._family} address reached {required} of "
            f"{len(self._sources)} source(s): {votes or 'no answers'}",
            votes=votes,
        )


# =============================================================================
# State Management
# =============================================================================


class StateStore:
    def __init__(self, path: str):
        self.path = Path(path)

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {"version": 1, "records": {}}
        try:
            state = json.loads(self.path.read_text("utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load state file {self.path}: {e}")
            return {"version": 1, "records": {}}
        if not isinstance(state, dict):
            logger.warning(f"Ignoring state file {self.path}: expected an object")
            return {"version": 1, "records": {}}
        return state

    def save(self, state: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(state, indent=2, sort_keys=True), "utf-8")
        tmp_path.replace(self.path)


class RecordStateTracker:
    """Last-known-applied address per ManagedRecord.

    ``last_applied`` only ever moves in mark_applied, which callers invoke
    after the provider confirmed the write.
    """

    def __init__(
        self,
        store: Optional[StateStore] = None,
        records: Optional[List[ManagedRecord]] = None,
    ):
        self._lock = threading.Lock()
        self._states: Dict[ManagedRecord, RecordState] = {}
        self._store = store
        if store is not None and records:
            self._restore(store.load(), records)

    def _restore(self, state: Dict[str, Any], records: List[ManagedRecord]) -> None:
        persisted = state.get("records", {})
        if not isinstance(persisted, dict):
            return
        for record in records:
            entry = persisted.get(record.key)
            if not isinstance(entry, dict):
                continue
            try:
                self._states[record] = RecordState.from_dict(entry)
            except (TypeError, ValueError) as e:
                logger.warning(f"Ignoring persisted state for {record}: {e}")
                continue
            logger.info(f"Restored state for {record}: {self._states[record].last_applied}")

    def get(self, record: ManagedRecord) -> Optional[RecordState]:
        with self._lock:
            state = self._states.get(record)
            return replace(state) if state is not None else None

    def mark_applied(
        self, record: ManagedRecord, address: str, timestamp: Optional[float] = None
    ) -> None:
        with self._lock:
            self._states[record] = RecordState(
                last_applied=address,
                last_updated=timestamp if timestamp is not None else time.time(),
                consecutive_failures=0,
            )
            self._persist()

    def mark_failed(self, record: ManagedRecord, reason: str = "") -> int:
        """Count a failed update; returns the consecutive failure count."""
        with self._lock:
            state = self._states.setdefault(record, RecordState())
            state.consecutive_failures += 1
            state.last_error = reason
            self._persist()
            return state.consecutive_failures

    def _persist(self) -> None:
        if self._store is None:
            return
        state = {
            "version": 1,
            "records": {record.key: s.to_dict() for record, s in self._states.items()},
        }
        try:
            self._store.save(state)
        except OSError as e:
            logger.error(f"Failed to save state file {self._store.path}: {e}")


# =============================================================================
# Update Executor
# =============================================================================


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    max_total_wait: float = 120.0

    def delay_for(self, attempt: int, rng: random.Random) -> float:
        """Back-off to wait after failed attempt number ``attempt`` (1-based).

        Exponential, capped at max_delay, with half of the delay randomised.
        """
        capped = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        return capped / 2 + rng.uniform(0, capped / 2)


class UpdateExecutor:
    """Applies one record update with bounded retry on transient failures.

    ``routes`` sends individual records to their own provider; every other
    record goes to ``provider``.
    """

    def __init__(
        self,
        provider: DNSProvider,
        policy: Optional[RetryPolicy] = None,
        *,
        routes: Optional[Dict[ManagedRecord, DNSProvider]] = None,
        stop_event: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], Any]] = None,
        rng: Optional[random.Random] = None,
    ):
        self._provider = provider
        self._routes = dict(routes or {})
        self._policy = policy or RetryPolicy()
        self._stop_event = stop_event or threading.Event()
        self._sleep = sleep or self._stop_event.wait
        self._rng = rng or random.Random()

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def apply(self, record: ManagedRecord, observation: AddressObservation) -> UpdateOutcome:
        address = observation.address
        provider = self._routes.get(record, self._provider)
        max_attempts = max(1, self._policy.max_attempts)
        waited = 0.0
        reason = ""
        attempt = 0

        while attempt < max_attempts:
            attempt += 1
            try:
                result = provider.upsert_record(record, address)
            except ProviderError as e:
                reason = f"{type(e).__name__}: {e}"
                if not e.transient:
                    logger.error(f"Permanent failure updating {record}: {reason}")
                    return UpdateOutcome.failed(FailureKind.PERMANENT, reason, attempts=attempt)
            except Exception as e:
                reason = f"{type(e).__name__}: {e}"
                logger.error(f"Unexpected error updating {record}: {reason}", exc_info=True)
                return UpdateOutcome.failed(FailureKind.PERMANENT, reason, attempts=attempt)
            else:
                logger.info(
                    f"Updated {record} -> {result.value} "
                    f"(change {result.change_id or 'n/a'}, attempt {attempt})"
                )
                return UpdateOutcome.applied(
                    result.value, change_id=result.change_id, attempts=attempt
                )

            if attempt >= max_attempts:
                break
            delay = self._policy.delay_for(attempt, self._rng)
            if waited + delay > self._policy.max_total_wait:
                logger.warning(
                    f"Retry budget of {self._policy.max_total_wait}s exhausted for {record}"
                )
                break
            logger.warning(
                f"Transient failure updating {record} (attempt {attempt}/{max_attempts}): "
                f"{reason}; retrying in {delay:.1f}s"
            )
            self._sleep(delay)
            waited += delay
            if self._stop_event.is_set():
                return UpdateOutcome.failed(
                    FailureKind.TRANSIENT,
                    f"shutdown requested; last error: {reason}",
                    attempts=attempt,
                )

        return UpdateOutcome.failed(FailureKind.TRANSIENT, reason, attempts=attempt)


# =============================================================================
# Reconciliation Scheduler
# =============================================================================


@dataclass
class CycleReport:
    """What one poll cycle observed and did."""

    observations: Dict[int, AddressObservation] = field(default_factory=dict)
    resolution_errors: Dict[int, str] = field(default_factory=dict)
    plans: List[UpdatePlan] = field(default_factory=list)
    outcomes: Dict[ManagedRecord, UpdateOutcome] = field(default_factory=dict)
    deferred: List[ManagedRecord] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return bool(self.resolution_errors) or any(not o.ok for o in self.outcomes.values())


def plan_updates(
    records: List[ManagedRecord],
    observations: Dict[int, AddressObservation],
    tracker: RecordStateTracker,
) -> List[UpdatePlan]:
    """Plans for every record whose last applied address differs from the observation."""
    plans: List[UpdatePlan] = []
    for record in records:
        observation = observations.get(record.record_type.family)
        if observation is None:
            continue
        state = tracker.get(record)
        if state is not None and state.last_applied == observation.address:
            logger.debug(f"{record} already points to {observation.address}")
            continue
        plans.append(UpdatePlan(record=record, observation=observation))
    return plans


class ReconciliationScheduler:
    def __init__(
        self,
        *,
        records: List[ManagedRecord],
        resolvers: Dict[int, AddressResolver],
        executor: UpdateExecutor,
        tracker: RecordStateTracker,
        interval_seconds: float = 300.0,
        jitter_seconds: float = 30.0,
        max_workers: int = 4,
        stop_event: Optional[threading.Event] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ):
        if not records:
            raise ValueError("at least one managed record is required")
        missing = {r.record_type.family for r in records} - set(resolvers)
        if missing:
            families = ", ".join(f"IPv{family}" for family in sorted(missing))
            raise ValueError(f"no address resolver for {families}")
        self.records = list(records)
        self._resolvers = resolvers
        self._executor = executor
        self._tracker = tracker
        self._interval = interval_seconds
        self._jitter = jitter_seconds
        self._max_workers = max(1, max_workers)
        self._stop_event = stop_event or threading.Event()
        self._rng = rng or random.Random()
        self._clock = clock
        self._phase = SchedulerPhase.IDLE
        self._in_flight: Set[ManagedRecord] = set()
        self._in_flight_lock = threading.Lock()

    @property
    def phase(self) -> SchedulerPhase:
        return self._phase

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Ask the loop to finish the current cycle and exit."""
        self._stop_event.set()

    def next_delay(self) -> float:
        return self._interval + self._rng.uniform(0, self._jitter)

    def run(self) -> None:
        logger.info(
            f"Starting reconciliation loop for {len(self.records)} record(s) "
            f"(interval {self._interval}s, jitter {self._jitter}s)"
        )
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Reconciliation cycle failed: {e}", exc_info=True)
            delay = self.next_delay()
            logger.debug(f"Next poll in {delay:.1f}s")
            self._stop_event.wait(delay)
        logger.info("Reconciliation loop stopped")

    def run_once(self) -> CycleReport:
        report = CycleReport()
        try:
            self._phase = SchedulerPhase.POLLING
            for family in sorted({r.record_type.family for r in self.records}):
                try:
                    observation = self._resolvers[family].resolve()
                except ResolutionError as e:
                    report.resolution_errors[family] = str(e)
                    logger.warning(f"IPv{family} address resolution failed: {e}")
                    continue
                report.observations[family] = observation
                logger.info(
                    f"Current IPv{family} address: {observation.address} (via {observation.source})"
                )
            if not report.observations:
                return report

            self._phase = SchedulerPhase.COMPARING
            plans = plan_updates(self.records, report.observations, self._tracker)
            if not plans:
                logger.info("All records up to date")
                return report
            if self._stop_event.is_set():
                return report

            self._phase = SchedulerPhase.UPDATING
            for plan in plans:
                if self._claim(plan.record):
                    report.plans.append(plan)
                else:
                    logger.info(f"Update for {plan.record} still in flight; deferring")
                    report.deferred.append(plan.record)
            if report.plans:
                workers = min(self._max_workers, len(report.plans))
                with ThreadPoolExecutor(max_workers=workers) as pool:
                    outcomes = list(pool.map(self._execute, report.plans))
                for plan, outcome in zip(report.plans, outcomes):
                    report.outcomes[plan.record] = outcome
            return report
        finally:
            self._phase = SchedulerPhase.IDLE

    def _claim(self, record: ManagedRecord) -> bool:
        with self._in_flight_lock:
            if record in self._in_flight:
                return False
            self._in_flight.add(record)
            return True

    def _release(self, record: ManagedRecord) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(record)

    def _execute(self, plan: UpdatePlan) -> UpdateOutcome:
        try:
            logger.info(f"Updating {plan.record} -> {plan.address}")
            outcome = self._executor.apply(plan.record, plan.observation)
            if outcome.ok:
                applied = outcome.value or plan.address
                self._tracker.mark_applied(plan.record, applied, self._clock())
            else:
                failures = self._tracker.mark_failed(plan.record, outcome.reason)
                kind = outcome.failure.value if outcome.failure else "unknown"
                log = logger.error if outcome.failure is FailureKind.PERMANENT else logger.warning
                log(
                    f"Update of {plan.record} to {plan.address} failed ({kind}): "
                    f"{outcome.reason} [consecutive failures: {failures}]"
                )
            return outcome
        finally:
            self._release(plan.record)


# =============================================================================
# Config Loading
# =============================================================================


@dataclass(frozen=True)
class RecordEntry:
    """A configured record before its hosted zone id is known."""

    name: str
    record_type: RecordType
    ttl: int = 300
    zone_id: str = ""
    zone_name: str = ""
    aws: Optional[AwsSettings] = None


@dataclass
class AgentConfig:
    entries: List[RecordEntry]
    poll_interval_seconds: float = 300.0
    poll_jitter_seconds: float = 30.0
    consensus: bool = False
    source_timeout_seconds: float = 5.0
    state_path: str = ""
    ipv4_sources: List[AddressSource] = field(default_factory=list)
    ipv6_sources: List[AddressSource] = field(default_factory=list)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    aws_region: str = "us-east-1"
    aws_profile: str = ""
    aws_credentials: Optional[AwsCredentials] = None

    @property
    def aws(self) -> AwsSettings:
        return AwsSettings(
            region=self.aws_region, profile=self.aws_profile, credentials=self.aws_credentials
        )

    def sources_for(self, family: int) -> List[AddressSource]:
        return self.ipv4_sources if family == 4 else self.ipv6_sources


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_number(data: Dict[str, Any], key: str, default: float, *, minimum: float = 0) -> float:
    raw = data.get(key)
    if raw is None:
        return default
    try:
        number = float(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"'{key}' must be a number, got {raw!r}") from e
    if number < minimum:
        raise ConfigError(f"'{key}' must be at least {minimum}, got {raw!r}")
    return number


def _parse_sources(raw: Any, default: List[str], key: str) -> List[AddressSource]:
    if raw is None:
        raw = default
    if not isinstance(raw, list):
        raise ConfigError(f"'sources.{key}' must be a list of URLs")
    sources = [AddressSource.from_url(str(url)) for url in raw if str(url or "").strip()]
    for source in sources:
        if urlparse(source.url).scheme not in ("http", "https"):
            raise ConfigError(f"Address source '{source.url}' must be an http(s) URL")
    return sources


def _parse_aws(raw: Any, key: str, base: AwsSettings) -> AwsSettings:
    """Parse an ``aws`` mapping; fields it leaves out come from ``base``.

    Static credentials in the mapping replace both the base credentials and
    the base profile.
    """
    if raw is None:
        return base
    if not isinstance(raw, dict):
        raise ConfigError(f"'{key}' must be a mapping")
    access_key_id = str(raw.get("access_key_id") or "").strip()
    secret_access_key = str(raw.get("secret_access_key") or "").strip()
    if bool(access_key_id) != bool(secret_access_key):
        raise ConfigError(
            f"'{key}.access_key_id' and '{key}.secret_access_key' must be set together"
        )
    profile = str(raw.get("profile") or "").strip()
    credentials = base.credentials
    if access_key_id:
        credentials = AwsCredentials(
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
            session_token=str(raw.get("session_token") or "").strip(),
        )
    elif profile:
        credentials = None
    elif credentials is None:
        profile = base.profile
    return AwsSettings(
        region=str(raw.get("region") or base.region).strip(),
        profile=profile,
        credentials=credentials,
    )


def _parse_record_entries(raw: Any, aws: Optional[AwsSettings] = None) -> List[RecordEntry]:
    if not isinstance(raw, list) or not raw:
        raise ConfigError("'records' must be a non-empty list")

    entries: List[RecordEntry] = []
    seen: Set[tuple] = set()
    for index, item in enumerate(raw):
        where = f"records[{index}]"
        if not isinstance(item, dict):
            raise ConfigError(f"{where} must be a mapping")

        zone_id = str(item.get("zone_id") or "").strip()
        zone_name = str(item.get("zone_name") or "").strip().rstrip(".")
        if not zone_id and not zone_name:
            raise ConfigError(f"{where} needs 'zone_id' or 'zone_name'")

        name = str(item.get("name") or "").strip()
        record_name = str(item.get("record_name") or "").strip()
        if not name:
            if not zone_name:
                raise ConfigError(f"{where} needs 'name' when only 'zone_id' is given")
            name = zone_name if record_name in ("", "@") else f"{record_name}.{zone_name}"

        ttl = _parse_number(item, "ttl", 300, minimum=1)
        ttl = _parse_number(item, "ttl_seconds", ttl, minimum=1)

        record_aws = None
        if item.get("aws") is not None:
            record_aws = _parse_aws(item["aws"], f"{where}.aws", aws or AwsSettings())

        if item.get("type") is not None:
            try:
                types = [RecordType(str(item["type"]).strip().upper())]
            except ValueError as e:
                raise ConfigError(
                    f"{where} has unsupported type {item['type']!r} (A or AAAA)"
                ) from e
        else:
            types = []
            if _parse_bool(item.get("ipv4"), default=True):
                types.append(RecordType.A)
            if _parse_bool(item.get("ipv6"), default=False):
                types.append(RecordType.AAAA)
            if not types:
                raise ConfigError(f"{where} enables neither ipv4 nor ipv6")

        for record_type in types:
            identity = (zone_id or zone_name, _normalize_fqdn(name), record_type)
            if identity in seen:
                raise ConfigError(f"{where} duplicates {name} ({record_type.value})")
            seen.add(identity)
            entries.append(
                RecordEntry(
                    name=name,
                    record_type=record_type,
                    ttl=int(ttl),
                    zone_id=zone_id,
                    zone_name=zone_name,
                    aws=record_aws,
                )
            )
    return entries


def parse_config(data: Dict[str, Any]) -> AgentConfig:
    """Build an AgentConfig from already-parsed YAML data."""
    if not isinstance(data, dict):
        raise ConfigError("config must be a mapping")

    aws = _parse_aws(data.get("aws") or {}, "aws", AwsSettings(AWS_REGION, AWS_PROFILE))

    sources = data.get("sources") or {}
    if not isinstance(sources, dict):
        raise ConfigError("'sources' must be a mapping with 'ipv4' and/or 'ipv6' lists")

    retry = data.get("retry") or {}
    if not isinstance(retry, dict):
        raise ConfigError("'retry' must be a mapping")
    defaults = RetryPolicy()
    policy = RetryPolicy(
        max_attempts=int(_parse_number(retry, "max_attempts", defaults.max_attempts, minimum=1)),
        base_delay=_parse_number(retry, "base_delay_seconds", defaults.base_delay),
        max_delay=_parse_number(retry, "max_delay_seconds", defaults.max_delay),
        max_total_wait=_parse_number(retry, "max_total_wait_seconds", defaults.max_total_wait),
    )

    return AgentConfig(
        entries=_parse_record_entries(data.get("records"), aws),
        poll_interval_seconds=_parse_number(
            data, "poll_interval_seconds", POLL_INTERVAL_SECONDS, minimum=1
        ),
        poll_jitter_seconds=_parse_number(data, "poll_jitter_seconds", POLL_JITTER_SECONDS),
        consensus=_parse_bool(data.get("consensus"), default=False),
        source_timeout_seconds=_parse_number(data, "source_timeout_seconds", 5.0, minimum=0.1),
        state_path=str(data.get("state_path") or STATE_PATH).strip(),
        ipv4_sources=_parse_sources(sources.get("ipv4"), DEFAULT_IPV4_SOURCES, "ipv4"),
        ipv6_sources=_parse_sources(sources.get("ipv6"), DEFAULT_IPV6_SOURCES, "ipv6"),
        retry=policy,
        aws_region=aws.region,
        aws_profile=aws.profile,
        aws_credentials=aws.credentials,
    )


def load_config(config_path: str) -> AgentConfig:
    """Load and validate the YAML config file."""
    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {config_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
    return parse_config(data or {})


def resolve_records(
    entries: List[RecordEntry], providers: ProviderPool
) -> Dict[ManagedRecord, DNSProvider]:
    """Turn config entries into ManagedRecords, each routed to its provider.

    Zone ids given by name are looked up once per provider.
    """
    zone_ids: Dict[tuple, str] = {}
    routes: Dict[ManagedRecord, DNSProvider] = {}
    for entry in entries:
        provider = providers.get(entry.aws)
        zone_id = entry.zone_id
        if not zone_id:
            cache_key = (provider, entry.zone_name)
            if cache_key not in zone_ids:
                try:
                    found = provider.find_hosted_zone_id(entry.zone_name)
                except ProviderError as e:
                    raise ConfigError(
                        f"Failed to look up hosted zone '{entry.zone_name}': {e}"
                    ) from e
                if not found:
                    raise ConfigError(f"No hosted zone found for '{entry.zone_name}'")
                logger.info(f"Found hosted zone id {found} for {entry.zone_name}")
                zone_ids[cache_key] = found
            zone_id = zone_ids[cache_key]
        record = ManagedRecord(
            zone_id=zone_id, name=entry.name, record_type=entry.record_type, ttl=entry.ttl
        )
        routes[record] = provider
    return routes


def build_scheduler(
    config: AgentConfig,
    provider: DNSProvider,
    *,
    stop_event: Optional[threading.Event] = None,
    provider_factory: Callable[[AwsSettings], DNSProvider] = create_route53_provider,
) -> ReconciliationScheduler:
    """Wire resolvers, tracker and executor for the configured records.

    ``provider`` serves the global aws settings; records with their own
    ``aws`` block get a provider from ``provider_factory``.
    """
    stop_event = stop_event or threading.Event()
    routes = resolve_records(
        config.entries, ProviderPool(provider, config.aws, factory=provider_factory)
    )
    records = list(routes)

    resolvers: Dict[int, AddressResolver] = {}
    for family in sorted({r.record_type.family for r in records}):
        sources = config.sources_for(family)
        if not sources:
            raise ConfigError(
                f"IPv{family} records are configured but 'sources.ipv{family}' is empty"
            )
        resolvers[family] = AddressResolver(
            sources,
            family=family,
            timeout_seconds=config.source_timeout_seconds,
            consensus=config.consensus,
        )

    store = StateStore(config.state_path) if config.state_path else None
    return ReconciliationScheduler(
        records=records,
        resolvers=resolvers,
        executor=UpdateExecutor(provider, config.retry, routes=routes, stop_event=stop_event),
        tracker=RecordStateTracker(store, records),
        interval_seconds=config.poll_interval_seconds,
        jitter_seconds=config.poll_jitter_seconds,
        stop_event=stop_event,
    )


# =============================================================================
# Main
# =============================================================================


def get_version() -> str:
    try:
        return version("route53-ddns")
    except PackageNotFoundError:
        return "0+unknown"


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="route53-ddns",
        description="Keep Route53 address records pointed at this host's public IP.",
    )
    parser.add_argument("-c", "--config", default=CONFIG_PATH, help="YAML config file")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="run a single sync and exit")
    mode.add_argument("-d", "--daemon", action="store_true", help="keep polling until stopped")
    parser.add_argument("-v", "--version", action="store_true", help="print version and exit")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    args = parse_args(argv)
    if args.version:
        print(get_version())
        return

    sync_mode = "once" if args.once else "watch" if args.daemon else SYNC_MODE
    if sync_mode not in ("once", "watch"):
        logger.error(f"Invalid SYNC_MODE: {sync_mode}. Use 'once' or 'watch'")
        sys.exit(1)

    logger.info(f"route53-ddns {get_version()} ({sync_mode} mode)")
    logger.info(f"Loading config file from {args.config}")
    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(f"Configuration validation failed: {e}")
        sys.exit(1)

    dns_provider = create_dns_provider(config)
    if not dns_provider.test_connection():
        logger.error(f"Cannot connect to {dns_provider.name}. Exiting.")
        sys.exit(1)

    stop_event = threading.Event()
    try:
        scheduler = build_scheduler(config, dns_provider, stop_event=stop_event)
    except ConfigError as e:
        logger.error(f"Configuration validation failed: {e}")
        sys.exit(1)

    logger.info(f"DNS Provider: {dns_provider.name}")
    logger.info(f"Managed records: {', '.join(str(r) for r in scheduler.records)}")
    logger.info(f"Consensus mode: {'on' if config.consensus else 'off'}")
    if config.state_path:
        logger.info(f"State file: {config.state_path}")
    else:
        logger.info("State file: disabled (first poll updates every record)")

    if sync_mode == "once":
        report = scheduler.run_once()
        if report.failed:
            sys.exit(1)
        return

    def _handle_signal(signum: int, frame: Any) -> None:
        logger.info(f"Received {signal.Signals(signum).name}, shutting down gracefully...")
        scheduler.stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logger.info(
        f"Poll interval: {config.poll_interval_seconds}s "
        f"(+ up to {config.poll_jitter_seconds}s jitter)"
    )
    scheduler.run()


if __name__ == "__main__":
    main()
