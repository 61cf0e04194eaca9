"""
lti.py — LTI 1.0 launch validation (OAuth 1.0a, HMAC-SHA1).

Checks run in this order and the first failure wins:
  1. required oauth_* params present
  2. oauth_signature_method == HMAC-SHA1
  3. oauth_version == 1.0
  4. oauth_timestamp within tolerance of our clock
  5. lti_message_type == basic-lti-launch-request
  6. lti_version in {LTI-1p0, LTI-1.0}
  7. resource_link_id present
  8. consumer key known
  9. signature matches (constant-time)
 10. nonce unused — claimed in Redis last, so unsigned requests cannot burn nonces

Every failure raises LaunchRejected carrying the reason.
"""
import base64
import hashlib
import hmac
import logging
from typing import Dict, Mapping, Optional, Tuple
from urllib.parse import quote

import redis.asyncio as aioredis
from fastapi import Request
from redis.exceptions import RedisError

from simportal.auth.schemas import IdentityInfo, PlatformContext, Role
from simportal.cache import claim_nonce
from simportal.clock import Clock, utcnow
from simportal.errors import LaunchRejected, StoreUnavailable

logger = logging.getLogger(__name__)

REQUIRED_OAUTH_PARAMS = (
    "oauth_consumer_key",
    "oauth_signature_method",
    "oauth_timestamp",
    "oauth_nonce",
    "oauth_version",
    "oauth_signature",
)
SUPPORTED_LTI_VERSIONS = frozenset({"LTI-1p0", "LTI-1.0"})
LAUNCH_PATH = "/api/auth/lti"
LTI_EMAIL_DOMAIN = "lti.local"

_ADMIN_ROLE_MARKERS = ("sysadmin", "systemadministrator")
_STAFF_ROLE_MARKERS = ("instructor", "teacher", "contentdeveloper", "administrator", "admin")


# ---------------------------------------------------------------------------
# OAuth 1.0a signature
# ---------------------------------------------------------------------------

def encode_rfc3986(value: str) -> str:
    """Percent-encode everything except ALPHA / DIGIT / - . _ ~"""
    return quote(str(value), safe="~")


def parameter_string(params: Mapping[str, str]) -> str:
    pairs = sorted(
        (encode_rfc3986(k), encode_rfc3986(v))
        for k, v in params.items()
        if k != "oauth_signature" and v not in (None, "")
    )
    return "&".join(f"{k}={v}" for k, v in pairs)


def signature_base_string(method: str, url: str, params: Mapping[str, str]) -> str:
    base_url = url.split("?", 1)[0]
    return "&".join(
        [method.upper(), encode_rfc3986(base_url), encode_rfc3986(parameter_string(params))]
    )


def sign(method: str, url: str, params: Mapping[str, str], consumer_secret: str) -> str:
    """HMAC-SHA1 signature; the token secret is always empty for LTI 1.0."""
    key = f"{encode_rfc3986(consumer_secret)}&".encode("utf-8")
    base = signature_base_string(method, url, params).encode("utf-8")
    return base64.b64encode(hmac.new(key, base, hashlib.sha1).digest()).decode("ascii")


# ---------------------------------------------------------------------------
# Launch → identity
# ---------------------------------------------------------------------------

def map_role(roles: Optional[str]) -> Role:
    """
    Map an LTI roles string (comma-separated, URNs allowed) to a portal role.
    System administrators are checked before the broader staff markers.
    """
    value = (roles or "").lower()
    if any(marker in value for marker in _ADMIN_ROLE_MARKERS):
        return Role.administrator
    if any(marker in value for marker in _STAFF_ROLE_MARKERS):
        return Role.instructor
    return Role.learner


def launch_identity(params: Mapping[str, str]) -> Tuple[Role, IdentityInfo]:
    user_id = params.get("user_id") or "anonymous"
    email = params.get("lis_person_contact_email_primary") or f"lti-{user_id}@{LTI_EMAIL_DOMAIN}"
    full_name = params.get("lis_person_name_full") or " ".join(
        part for part in (params.get("lis_person_name_given"), params.get("lis_person_name_family")) if part
    ) or None
    context = PlatformContext(
        course_id=params.get("context_id"),
        course_name=params.get("context_title"),
        resource_id=params.get("resource_link_id"),
        institution=params.get("tool_consumer_instance_name") or params.get("tool_consumer_instance_guid"),
        return_url=params.get("launch_presentation_return_url"),
        full_name=full_name,
    )
    info = IdentityInfo(user_id=user_id, email=email, full_name=full_name, context=context)
    return map_role(params.get("roles")), info


def launch_url(request: Request) -> str:
    """Rebuild the URL the consumer signed, honouring reverse-proxy headers."""
    proto = request.headers.get("x-forwarded-proto") or request.url.scheme or "https"
    host = request.headers.get("x-forwarded-host") or request.headers.get("host") or "localhost:3000"
    return f"{proto}://{host}{LAUNCH_PATH}"


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------

class LtiValidator:
    def __init__(
        self,
        consumers: Dict[str, str],
        timestamp_tolerance_seconds: int = 300,
        nonce_ttl_seconds: int = 600,
        clock: Clock = utcnow,
    ) -> None:
        self._consumers = dict(consumers)
        self._tolerance = timestamp_tolerance_seconds
        self._nonce_ttl = nonce_ttl_seconds
        self._clock = clock

    def _reject(self, reason: str, consumer_key: Optional[str]) -> LaunchRejected:
        logger.warning("LTI launch rejected consumer=%s reason=%s", consumer_key, reason)
        return LaunchRejected(reason)

    async def validate(
        self,
        method: str,
        url: str,
        params: Mapping[str, str],
        redis: aioredis.Redis,
    ) -> str:
        """Validate a launch; returns the consumer key or raises LaunchRejected."""
        consumer_key = params.get("oauth_consumer_key")

        for name in REQUIRED_OAUTH_PARAMS:
            if not params.get(name):
                raise self._reject(f"Missing required OAuth parameter: {name}", consumer_key)

        if params["oauth_signature_method"] != "HMAC-SHA1":
            raise self._reject("Unsupported signature method", consumer_key)
        if params["oauth_version"] != "1.0":
            raise self._reject("Unsupported OAuth version", consumer_key)

        try:
            timestamp = int(params["oauth_timestamp"])
        except ValueError:
            timestamp = None
        now = int(self._clock().timestamp())
        if timestamp is None or abs(now - timestamp) > self._tolerance:
            raise self._reject("Request timestamp is too old or in the future", consumer_key)

        if params.get("lti_message_type") != "basic-lti-launch-request":
            raise self._reject("Invalid LTI message type", consumer_key)
        if params.get("lti_version") not in SUPPORTED_LTI_VERSIONS:
            raise self._reject("Unsupported LTI version", consumer_key)
        if not params.get("resource_link_id"):
            raise self._reject("Missing resource_link_id", consumer_key)

        secret = self._consumers.get(consumer_key)
        if secret is None:
            raise self._reject("Unknown consumer key", consumer_key)

        expected = sign(method, url, params, secret)
        if not hmac.compare_digest(expected.encode("utf-8"), params["oauth_signature"].encode("utf-8")):
            raise self._reject("Invalid OAuth signature", consumer_key)

        try:
            fresh = await claim_nonce(
                redis, consumer_key, params["oauth_nonce"], params["oauth_timestamp"], self._nonce_ttl
            )
        except RedisError as exc:
            logger.error("Nonce store unavailable consumer=%s: %s", consumer_key, type(exc).__name__)
            raise StoreUnavailable("Launch could not be completed. Please relaunch from your course.") from exc
        if not fresh:
            raise self._reject("Duplicate request (nonce already used)", consumer_key)

        return consumer_key
