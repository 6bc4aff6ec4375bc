"""Anti-fraud scoring for recorded views.

Pure, deterministic heuristics: no database access and no clock. The
ingestion service gathers the request-derived signals and hands them to
calculate_fraud_score().
"""

import hashlib
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

logger = logging.getLogger(__name__)

# Crawlers, HTTP libraries and browser automation
BOT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"bot", r"crawler", r"spider", r"scraper", r"curl", r"wget",
        r"python-requests", r"node-fetch", r"axios", r"headless", r"phantom",
        r"selenium", r"puppeteer", r"playwright", r"slurp", r"baiduspider",
        r"facebookexternalhit",
    )
]

SUSPICIOUS_UA_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"headless", r"phantom", r"selenium", r"puppeteer", r"playwright",
        r"automation", r"electron", r"python", r"curl", r"wget", r"httpclient",
    )
]

# Weights
WEIGHT_BOT = 100
WEIGHT_HIGH_IP_VELOCITY = 40
WEIGHT_VERY_HIGH_IP_COUNT = 20
WEIGHT_SUSPICIOUS_USER_AGENT = 30
WEIGHT_NO_REFERRER = 10
WEIGHT_VPN = 35
WEIGHT_DATA_CENTER = 25
WEIGHT_REPEAT_DEVICE = 15
WEIGHT_REPEAT_VISITOR = -10
WEIGHT_VALID_GEOLOCATION = -15

# Thresholds
HIGH_IP_VELOCITY = 10       # requests in the rolling window
VERY_HIGH_IP_COUNT = 50     # lifetime requests
NO_REFERRER_IP_COUNT = 5
REPEAT_DEVICE_IP_COUNT = 3

MAX_SCORE = 100

VALID_COUNTRIES = frozenset({
    "US", "CA", "GB", "DE", "FR", "ES", "IT", "NL", "BE", "AT",
    "CH", "SE", "NO", "DK", "FI", "IE", "PT", "PL", "CZ", "HU",
    "RO", "BG", "GR", "SK", "SI", "EE", "LV", "LT", "CY", "MT",
    "AU", "NZ", "JP", "KR", "SG", "HK", "TW", "IN", "BR", "MX",
    "AR", "CL", "CO", "PE", "VE", "ZA", "EG", "NG", "KE", "MA",
})


@dataclass(frozen=True)
class FraudSignals:
    """Request-derived inputs to the scorer.

    ip_velocity and ip_visit_count are distinct signals: the first counts
    requests from the hashed IP inside the rate-limit window, the second
    counts every request ever seen from it.
    """
    is_bot: bool
    ip_velocity: int
    ip_visit_count: int
    user_agent: str
    referrer: Optional[str]
    is_new_visitor: bool
    country_code: Optional[str]
    is_known_vpn: bool = False
    is_data_center: bool = False
    is_same_device: bool = False


@dataclass(frozen=True)
class FraudAssessment:
    score: int
    reasons: List[str] = field(default_factory=list)


def _salted_sha256(value: str, salt: str) -> str:
    return hashlib.sha256((value + salt).encode("utf-8")).hexdigest()


def hash_ip(ip: str, salt: str = "") -> str:
    return _salted_sha256(ip, salt)


def hash_user_agent(user_agent: str, salt: str = "") -> str:
    return _salted_sha256(user_agent, salt)


def device_fingerprint_hash(
    screen_resolution: Optional[str],
    timezone: Optional[str],
    language: Optional[str],
    platform: Optional[str],
    salt: str = "",
) -> str:
    fingerprint = "|".join(part or "" for part in (screen_resolution, timezone, language, platform))
    return _salted_sha256(fingerprint, salt)


def is_likely_bot(user_agent: Optional[str]) -> bool:
    """A missing user agent is not treated as a bot on its own."""
    if not user_agent:
        return False
    return any(p.search(user_agent) for p in BOT_PATTERNS)


def is_suspicious_user_agent(user_agent: Optional[str]) -> bool:
    if not user_agent:
        return False
    return any(p.search(user_agent) for p in SUSPICIOUS_UA_PATTERNS)


def is_valid_country(country_code: Optional[str]) -> bool:
    """Unknown geography is allowed."""
    if not country_code:
        return True
    return country_code.upper() in VALID_COUNTRIES


def assess_view(signals: FraudSignals) -> FraudAssessment:
    """
    Score a view and explain the score.

    Returns a FraudAssessment whose score is clamped to 0-100.
    """
    score = 0
    reasons: List[str] = []

    if signals.is_bot:
        score += WEIGHT_BOT
        reasons.append("bot_detected")

    if signals.ip_velocity > HIGH_IP_VELOCITY:
        score += WEIGHT_HIGH_IP_VELOCITY
        reasons.append("high_ip_velocity")

    if signals.ip_visit_count > VERY_HIGH_IP_COUNT:
        score += WEIGHT_VERY_HIGH_IP_COUNT
        reasons.append("very_high_ip_count")

    if is_suspicious_user_agent(signals.user_agent):
        score += WEIGHT_SUSPICIOUS_USER_AGENT
        reasons.append("suspicious_user_agent")

    if not signals.referrer and signals.ip_visit_count > NO_REFERRER_IP_COUNT:
        score += WEIGHT_NO_REFERRER
        reasons.append("no_referrer")

    if signals.is_known_vpn:
        score += WEIGHT_VPN
        reasons.append("vpn_detected")

    if signals.is_data_center:
        score += WEIGHT_DATA_CENTER
        reasons.append("data_center_ip")

    if signals.is_same_device and signals.ip_visit_count > REPEAT_DEVICE_IP_COUNT:
        score += WEIGHT_REPEAT_DEVICE
        reasons.append("repeat_device")

    if not signals.is_new_visitor:
        score += WEIGHT_REPEAT_VISITOR

    # Absent geo (lookup failure) contributes nothing
    if signals.country_code:
        score += WEIGHT_VALID_GEOLOCATION

    return FraudAssessment(score=min(MAX_SCORE, max(0, score)), reasons=reasons)


def calculate_fraud_score(signals: FraudSignals) -> int:
    return assess_view(signals).score


def is_view_suspicious(fraud_score: int, cutoff: int = 50) -> bool:
    """UI flagging cutoff; independent from a campaign's billing threshold."""
    return fraud_score >= cutoff
