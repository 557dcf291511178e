"""Per-endpoint rate limit policies.

Each sensitive endpoint is tracked under its own scope, so one client
exhausting ``login`` does not affect its ``get-user`` budget.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RateLimitPolicy:
    scope: str
    limit: int
    window_seconds: int


_POLICIES: tuple[RateLimitPolicy, ...] = (
    # Authentication
    RateLimitPolicy("login", 5, 60),
    RateLimitPolicy("admin-login", 5, 900),
    RateLimitPolicy("register", 3, 300),
    RateLimitPolicy("email-auth", 5, 60),
    # Users
    RateLimitPolicy("get-user", 30, 10),
    RateLimitPolicy("get-users", 10, 60),
    RateLimitPolicy("save-users", 5, 60),
    RateLimitPolicy("users-get", 30, 10),
    RateLimitPolicy("users-put", 10, 60),
    # Catalog and payments
    RateLimitPolicy("products-get", 30, 10),
    RateLimitPolicy("products-post", 10, 60),
    RateLimitPolicy("product-get", 30, 10),
    RateLimitPolicy("product-put", 10, 60),
    RateLimitPolicy("product-delete", 5, 60),
    RateLimitPolicy("product-download", 10, 60),
    RateLimitPolicy("product-search", 20, 10),
    RateLimitPolicy("product-ratings", 30, 10),
    RateLimitPolicy("coupons-get", 20, 10),
    RateLimitPolicy("coupons-apply", 10, 60),
    RateLimitPolicy("purchases-get", 20, 10),
    RateLimitPolicy("purchases-post", 10, 60),
    RateLimitPolicy("deposits-get", 10, 10),
    RateLimitPolicy("deposits-put", 20, 10),
    RateLimitPolicy("withdrawals-get", 10, 10),
    RateLimitPolicy("withdrawals-put", 20, 10),
    # Community
    RateLimitPolicy("review-get", 30, 10),
    RateLimitPolicy("review-post", 5, 60),
    RateLimitPolicy("wishlist-get", 20, 10),
    RateLimitPolicy("wishlist-post", 10, 10),
    RateLimitPolicy("wishlist-delete", 10, 10),
    RateLimitPolicy("referrals-get", 20, 10),
    RateLimitPolicy("notifications-get", 30, 10),
    RateLimitPolicy("chat-get", 30, 10),
    RateLimitPolicy("chat-post", 10, 60),
    # Integrations
    RateLimitPolicy("ai-product-support", 10, 60),
    RateLimitPolicy("telegram-send", 10, 60),
)

POLICIES: dict[str, RateLimitPolicy] = {policy.scope: policy for policy in _POLICIES}


def get_policy(scope: str) -> RateLimitPolicy | None:
    """Return the configured policy for ``scope``, if any."""
    return POLICIES.get(scope)


def email_auth_identifier(email: str, client: str) -> str:
    """Key for the ``email-auth`` scope: ``email-auth:{email}:{client}``.

    Email sign-in is limited per account and per address together, so a
    caller checks it with ``RateLimitService.check`` directly instead of the
    per-address ``enforce_rate_limit`` dependency.
    """
    return f"email-auth:{email}:{client}"
