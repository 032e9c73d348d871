from __future__ import annotations

from typing import Iterable


# Substring patterns over granted scopes; the first matching tier wins.
HIGH_RISK_PATTERNS = ("gmail", "mail.google", "drive", "calendar", "admin", "spreadsheets")
MEDIUM_RISK_PATTERNS = ("readonly", "contacts", "userinfo", "profile", "openid")


def oauth_risk_level(scopes: Iterable[str]) -> str:
    joined = " ".join(scopes).lower()
    if any(pattern in joined for pattern in HIGH_RISK_PATTERNS):
        return "HIGH"
    if any(pattern in joined for pattern in MEDIUM_RISK_PATTERNS):
        return "MEDIUM"
    return "LOW"
