"""HTTP routes of the per-resource authorization server.

Every route resolves the slug first; unknown or disabled resources are 404.
Errors raised here are ``GatewayError`` subclasses and are rendered as OAuth
error bodies by the application's exception handler.
"""

import json
from typing import Any, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, RedirectResponse

from shared.errors import (
    InvalidClientMetadataError,
    InvalidRequestError,
    InvalidTargetError,
    UnsupportedGrantTypeError,
    UnsupportedResponseTypeError,
)
from shared.logging import bind_context, get_logger
from shared.models import ANONYMOUS_USER_ID, Visibility
from oauth_server.metadata import (
    CACHE_HEADERS,
    DEFAULT_DISCOVERY_TYPE,
    extract_slug,
    extract_slug_from_resource,
    infer_discovery_type,
)
from oauth_server.pkce import is_valid_pkce_value

logger = get_logger(__name__)

router = APIRouter(tags=["OAuth"])

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _form_value(form: Any, key: str) -> Optional[str]:
    value = form.get(key)
    return value if isinstance(value, str) and value else None


def _with_query(url: str, params: dict[str, str]) -> str:
    """Append query parameters to a URL, keeping the ones it already has."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend(params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

@router.get("/api/oauth/{slug}/.well-known/oauth-protected-resource")
async def protected_resource_metadata(slug: str, request: Request):
    """RFC 9728 protected resource metadata."""
    resource = request.app.state.registry.resolve(slug)
    return JSONResponse(
        request.app.state.metadata.protected_resource(resource),
        headers=CACHE_HEADERS,
    )


@router.get("/api/oauth/{slug}/.well-known/oauth-authorization-server")
@router.get("/api/oauth/{slug}/.well-known/openid-configuration")
async def authorization_server_metadata(slug: str, request: Request):
    """RFC 8414 metadata, also served as the OpenID configuration."""
    resource = request.app.state.registry.resolve(slug)
    return JSONResponse(
        request.app.state.metadata.authorization_server(resource),
        headers=CACHE_HEADERS,
    )


@router.get("/api/oauth/{slug}/.well-known/jwks.json")
async def jwks(slug: str, request: Request):
    resource = request.app.state.registry.resolve(slug)
    return JSONResponse(request.app.state.metadata.jwks(resource), headers=CACHE_HEADERS)


@router.get("/.well-known/{path:path}")
async def root_discovery_redirect(path: str, request: Request):
    """
    Redirect discovery requests built against the host root.

    Clients construct paths such as
    ``/.well-known/oauth-authorization-server/api/mcp/{slug}``.
    """
    slug = extract_slug(path)
    if not slug:
        return JSONResponse(
            {
                "error": "Not found",
                "message": "OAuth discovery endpoint not found. Use /api/oauth/{slug}/.well-known/{type}",
                "attemptedPath": f"/.well-known/{path}",
            },
            status_code=404,
        )

    discovery_type = infer_discovery_type(path) or DEFAULT_DISCOVERY_TYPE
    return RedirectResponse(
        request.app.state.metadata.discovery_url(slug, discovery_type),
        status_code=307,
    )


@router.get("/api/mcp/{slug}/.well-known/{path:path}")
async def resource_discovery_redirect(slug: str, path: str, request: Request):
    discovery_type = infer_discovery_type(path) or DEFAULT_DISCOVERY_TYPE
    return RedirectResponse(
        request.app.state.metadata.discovery_url(slug, discovery_type),
        status_code=307,
    )


@router.get("/authorize")
async def authorize_redirect(request: Request):
    """Forward a root ``/authorize`` request to the resource named by ``resource``."""
    slug = extract_slug_from_resource(request.query_params.get("resource"))
    if not slug:
        raise InvalidRequestError(
            "Missing or invalid resource parameter. The resource parameter must be "
            "a valid MCP endpoint URL (e.g. https://host/api/mcp/{slug})"
        )

    target = f"{request.app.state.metadata.issuer(slug)}/authorize"
    return RedirectResponse(_with_query(target, dict(request.query_params)), status_code=307)


# ---------------------------------------------------------------------------
# Authorization and token endpoints
# ---------------------------------------------------------------------------

@router.get("/api/oauth/{slug}/authorize")
async def authorize(slug: str, request: Request):
    """
    Authorization endpoint (authorization code + PKCE).

    Private resources require a login session; without one the user is sent
    to the login page and returned here afterwards.
    """
    state = request.app.state
    params = request.query_params
    bind_context(slug=slug)

    if params.get("response_type") != "code":
        raise UnsupportedResponseTypeError("Only authorization_code flow is supported")

    missing = [p for p in ("client_id", "redirect_uri", "code_challenge") if not params.get(p)]
    if missing:
        raise InvalidRequestError(f"Missing required parameters: {', '.join(missing)}")

    if params.get("code_challenge_method") != "S256":
        raise InvalidRequestError("Only S256 code challenge method is supported")

    if not is_valid_pkce_value(params["code_challenge"]):
        raise InvalidRequestError("code_challenge must be 43-128 unreserved characters")

    resource = state.registry.resolve(slug)
    client_id = params["client_id"]
    redirect_uri = params["redirect_uri"]

    resource_uri = params.get("resource")
    if resource_uri and extract_slug_from_resource(resource_uri) != slug:
        raise InvalidTargetError("The resource parameter does not name this MCP")

    client = await state.clients.get(client_id)
    if client is not None and redirect_uri not in client.redirect_uris:
        raise InvalidRequestError("redirect_uri is not registered for this client")

    scope = state.token_service.parse_scope(params.get("scope"))

    user = state.sessions.from_request(request)
    if user is None:
        if resource.visibility == Visibility.PRIVATE:
            login_url = _with_query(state.settings.oauth.login_url, {"redirect": str(request.url)})
            return RedirectResponse(login_url, status_code=302)
        user_id = ANONYMOUS_USER_ID
    else:
        user_id = user.user_id

    code = await state.token_service.issue_code(
        resource,
        user_id=user_id,
        client_id=client_id,
        redirect_uri=redirect_uri,
        code_challenge=params["code_challenge"],
        scope=" ".join(scope),
        resource_uri=resource_uri or state.metadata.resource_url(slug),
    )

    query = {"code": code.code}
    if params.get("state"):
        query["state"] = params["state"]
    return RedirectResponse(_with_query(redirect_uri, query), status_code=302)


@router.post("/api/oauth/{slug}/token")
async def token(slug: str, request: Request):
    """Token endpoint for the authorization_code and refresh_token grants."""
    state = request.app.state
    resource = state.registry.resolve(slug)
    form = await request.form()
    grant_type = _form_value(form, "grant_type")

    if grant_type == "authorization_code":
        values = {
            key: _form_value(form, key)
            for key in ("code", "redirect_uri", "client_id", "code_verifier")
        }
        missing = [key for key, value in values.items() if not value]
        if missing:
            raise InvalidRequestError(f"Missing required parameters: {', '.join(missing)}")

        response = await state.token_service.exchange_code(resource, **values)

    elif grant_type == "refresh_token":
        refresh_token = _form_value(form, "refresh_token")
        if not refresh_token:
            raise InvalidRequestError("Missing required parameters: refresh_token")

        response = await state.token_service.refresh(
            resource,
            refresh_token,
            client_id=_form_value(form, "client_id"),
        )

    else:
        raise UnsupportedGrantTypeError(
            "Only authorization_code and refresh_token grants are supported"
        )

    return JSONResponse(response.model_dump(exclude_none=True), headers=NO_STORE_HEADERS)


@router.post("/api/oauth/{slug}/introspect")
async def introspect(slug: str, request: Request):
    """RFC 7662 token introspection. Store failures surface as server_error."""
    state = request.app.state
    resource = state.registry.resolve(slug)
    form = await request.form()

    token_value = _form_value(form, "token")
    if not token_value:
        raise InvalidRequestError("Missing token parameter")

    result = await state.token_service.introspect(token_value, resource.id)
    return JSONResponse(result.model_dump(exclude_none=True), headers=NO_STORE_HEADERS)


@router.post("/api/oauth/{slug}/revoke")
async def revoke(slug: str, request: Request):
    """RFC 7009 revocation. Unknown tokens still answer 200."""
    state = request.app.state
    resource = state.registry.resolve(slug)
    form = await request.form()

    token_value = _form_value(form, "token")
    if not token_value:
        raise InvalidRequestError("Missing token parameter")

    await state.token_service.revoke(token_value, resource.id)
    return JSONResponse({})


@router.post("/api/oauth/{slug}/register", status_code=201)
async def register(slug: str, request: Request):
    """RFC 7591 dynamic client registration."""
    state = request.app.state
    resource = state.registry.resolve(slug)

    try:
        metadata = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidClientMetadataError("Request body must be a JSON object")
    if not isinstance(metadata, dict):
        raise InvalidClientMetadataError("Request body must be a JSON object")

    client = await state.clients.register(resource, metadata)
    return JSONResponse(client.model_dump(exclude_none=True), status_code=201)
