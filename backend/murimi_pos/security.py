# Overview: Request-level security hooks (rate limiting, content type, header screening, response headers).

"""
Security Middleware

Registered on the app in create_app():
- before_request: rate limit per client, JSON-only write bodies,
  block obviously malicious User-Agent headers
- after_request: CORS for configured origins and standard security headers

sanitize_input() is used by search endpoints on free-text query params.
"""

import re

from flask import current_app, jsonify, request

from .services import rate_limit_service

SUSPICIOUS_PATTERNS = [
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"vbscript:", re.IGNORECASE),
    re.compile(r"onload", re.IGNORECASE),
    re.compile(r"onerror", re.IGNORECASE),
    re.compile(r"onclick", re.IGNORECASE),
    re.compile(r"union.*select", re.IGNORECASE),
    re.compile(r"drop.*table", re.IGNORECASE),
    re.compile(r"insert.*into", re.IGNORECASE),
    re.compile(r"delete.*from", re.IGNORECASE),
]

WRITE_METHODS = {"POST", "PUT", "PATCH"}

# Gateway webhooks are not throttled per client
RATE_LIMIT_EXEMPT_PATHS = {"/api/health", "/api/mpesa/callback"}

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "X-XSS-Protection": "1; mode=block",
}


def sanitize_input(value: str) -> str:
    value = re.sub(r"[<>]", "", value)
    value = re.sub(r"javascript:", "", value, flags=re.IGNORECASE)
    value = re.sub(r"on\w+=", "", value, flags=re.IGNORECASE)
    return value.strip()


def client_identifier() -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote_addr or "unknown"


def is_suspicious_user_agent(user_agent: str) -> bool:
    return any(pattern.search(user_agent) for pattern in SUSPICIOUS_PATTERNS)


def _error(message: str, status: int, headers: dict | None = None):
    response = jsonify({"success": False, "error": message})
    response.status_code = status
    for name, value in (headers or {}).items():
        response.headers[name] = value
    return response


def screen_request():
    """before_request hook. Returns a response to short-circuit, or None."""
    if request.method == "OPTIONS":
        return None

    user_agent = request.headers.get("User-Agent", "")
    if user_agent and is_suspicious_user_agent(user_agent):
        current_app.logger.warning(
            "Suspicious request blocked: path=%s ip=%s ua=%r", request.path, client_identifier(), user_agent
        )
        return _error("Suspicious request blocked", 403)

    if request.method in WRITE_METHODS and request.content_length and not request.is_json:
        return _error("Content-Type must be application/json", 415)

    config = current_app.config
    if config.get("RATE_LIMIT_ENABLED", True) and request.path not in RATE_LIMIT_EXEMPT_PATHS:
        result = rate_limit_service.check_rate_limit(
            f"ip:{client_identifier()}",
            max_requests=config.get("RATE_LIMIT_MAX_REQUESTS", 100),
            window_seconds=config.get("RATE_LIMIT_WINDOW_SECONDS", 60),
        )
        if not result.allowed:
            current_app.logger.warning("Rate limit exceeded for %s", client_identifier())
            return _error(
                "Too many requests. Please try again later.",
                429,
                {
                    "Retry-After": str(result.retry_after_seconds),
                    "X-RateLimit-Remaining": "0",
                },
            )
    return None


def apply_response_headers(response):
    """after_request hook: CORS and security headers."""
    origin = request.headers.get("Origin")
    allowed = current_app.config.get("CORS_ALLOWED_ORIGINS", [])
    if origin and ("*" in allowed or origin in allowed):
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Vary"] = "Origin"
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, PATCH, DELETE, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    return response


def init_app(app):
    app.before_request(screen_request)
    app.after_request(apply_response_headers)
