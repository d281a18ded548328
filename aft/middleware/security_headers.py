"""
Security headers middleware.

The API serves JSON only, so the Content-Security-Policy is locked down
completely. Also sets X-Content-Type-Options, X-Frame-Options,
Strict-Transport-Security, Referrer-Policy, Cache-Control for API responses.

Usage:
    from aft.middleware.security_headers import init_security_headers
    init_security_headers(app)
"""

from flask import request


def init_security_headers(app):
    """Register after_request handler that injects security headers."""

    @app.after_request
    def _add_security_headers(response):
        response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")

        # Prevent MIME-type sniffing
        response.headers.setdefault("X-Content-Type-Options", "nosniff")

        # Clickjacking protection
        response.headers.setdefault("X-Frame-Options", "DENY")

        # HTTPS enforcement (ignored over HTTP, but ready for production)
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=31536000; includeSubDomains"
        )

        response.headers.setdefault("Referrer-Policy", "no-referrer")

        # Request data (CUI) must not land in shared caches
        if request.path.startswith("/api/"):
            response.headers.setdefault("Cache-Control", "no-store")

        response.headers.pop("Server", None)

        return response
