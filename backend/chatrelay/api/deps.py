"""Request-scoped access to the collaborators built at startup."""

from urllib.parse import urlencode, urlsplit

from fastapi import Request
from fastapi.responses import RedirectResponse

from chatrelay.services.chat_service import ChatRelay
from chatrelay.services.model_catalog import ModelCatalog


def get_relay(request: Request) -> ChatRelay:
    return request.app.state.relay


def get_catalog(request: Request) -> ModelCatalog:
    return request.app.state.catalog


def wants_json(request: Request) -> bool:
    """True when the caller expects a JSON body rather than a redirect."""
    accept = request.headers.get("accept", "")
    return "json" in accept or request.headers.get("x-requested-with") == "XMLHttpRequest"


def redirect_to(path: str, error: str | None = None) -> RedirectResponse:
    if error:
        separator = "&" if "?" in path else "?"
        path = f"{path}{separator}{urlencode({'error': error})}"
    return RedirectResponse(path, status_code=303)


def redirect_back(request: Request, fallback: str, error: str | None = None) -> RedirectResponse:
    """Redirect to the Referer path (same site only), or to fallback."""
    referer = request.headers.get("referer")
    target = fallback
    if referer:
        parts = urlsplit(referer)
        if not parts.netloc or parts.netloc == request.url.netloc:
            target = parts.path + (f"?{parts.query}" if parts.query else "")
    return redirect_to(target, error=error)
