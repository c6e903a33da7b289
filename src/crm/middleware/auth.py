"""Authentication gate in front of the GraphQL endpoint.

A pure ASGI middleware rather than BaseHTTPMiddleware: when no
Authorization header is sent it has to read the request body to decide
whether the operation is public, and then hand the same body on to the
GraphQL router.

Decision table for requests to the GraphQL path:

    header malformed / token invalid / expired / revoked  → 401
    valid Bearer token                                    → identity attached
    no header, every root field in PUBLIC_FIELDS          → anonymous
    no header, anything else (unparseable included)       → 401
    no header, body over MAX_ANONYMOUS_BODY bytes          → 413

Public-ness is decided from the parsed document, never from substrings
of the raw payload. The same allow-list is enforced again inside the
schema through per-field permission classes.
"""

import json
from typing import Iterable, Optional

import structlog
from graphql import (
    FieldNode,
    FragmentDefinitionNode,
    FragmentSpreadNode,
    GraphQLError,
    InlineFragmentNode,
    OperationDefinitionNode,
    SelectionSetNode,
    parse,
)
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from crm.auth.dependencies import AuthenticationFailed, authenticate_bearer, parse_bearer

logger = structlog.get_logger()

PUBLIC_FIELDS = frozenset(
    {
        "health",
        "register",
        "login",
        "verifyInvitationToken",
        "joinOrganisation",
        "__schema",
        "__type",
        "__typename",
    }
)


# Public operations are small; anything bigger must authenticate first
MAX_ANONYMOUS_BODY = 64 * 1024


def unauthorized(message: str) -> JSONResponse:
    return JSONResponse(
        {"error": message},
        status_code=401,
        headers={"WWW-Authenticate": "Bearer"},
    )


def too_large() -> JSONResponse:
    return JSONResponse({"error": "Request body too large"}, status_code=413)


# ─── Document inspection ────────────────────────────────


def _select_operation(document, operation_name: Optional[str]):
    operations = [
        d for d in document.definitions if isinstance(d, OperationDefinitionNode)
    ]
    if operation_name:
        for op in operations:
            if op.name and op.name.value == operation_name:
                return op
        return None
    if len(operations) == 1:
        return operations[0]
    return None


def _collect_fields(
    selection_set: SelectionSetNode,
    fragments: dict,
    seen: set,
) -> Optional[set]:
    names = set()
    for selection in selection_set.selections:
        if isinstance(selection, FieldNode):
            names.add(selection.name.value)
            continue
        if isinstance(selection, InlineFragmentNode):
            inner = _collect_fields(selection.selection_set, fragments, seen)
        elif isinstance(selection, FragmentSpreadNode):
            name = selection.name.value
            if name in seen:
                continue
            fragment = fragments.get(name)
            if fragment is None:
                return None
            inner = _collect_fields(fragment.selection_set, fragments, seen | {name})
        else:
            return None
        if inner is None:
            return None
        names |= inner
    return names


def root_fields(query: str, operation_name: Optional[str] = None) -> Optional[set]:
    """Root field names selected by the operation that would execute.

    Returns None when the document doesn't parse or the operation can't
    be determined; callers treat that as protected.
    """
    try:
        document = parse(query)
    except GraphQLError:
        return None

    operation = _select_operation(document, operation_name)
    if operation is None:
        return None
    fragments = {
        d.name.value: d
        for d in document.definitions
        if isinstance(d, FragmentDefinitionNode)
    }
    return _collect_fields(operation.selection_set, fragments, set())


def is_public_operation(query, operation_name=None) -> bool:
    if not isinstance(query, str):
        return False
    if operation_name is not None and not isinstance(operation_name, str):
        return False
    fields = root_fields(query, operation_name)
    return bool(fields) and fields <= PUBLIC_FIELDS


def _operations_from_body(body: bytes, content_type: str) -> Optional[Iterable[dict]]:
    if "application/json" not in content_type:
        return None
    try:
        payload = json.loads(body or b"null")
    except ValueError:
        return None
    if isinstance(payload, dict):
        return [payload]
    if isinstance(payload, list) and payload and all(isinstance(p, dict) for p in payload):
        return payload
    return None


def is_public_request(request: Request, body: bytes) -> bool:
    if request.method == "GET":
        query = request.query_params.get("query")
        if query is None:
            # GraphiQL page
            return True
        return is_public_operation(query, request.query_params.get("operationName"))

    if request.method != "POST":
        return False
    operations = _operations_from_body(body, request.headers.get("content-type", ""))
    if not operations:
        return False
    return all(
        is_public_operation(op.get("query"), op.get("operationName"))
        for op in operations
    )


# ─── ASGI plumbing ──────────────────────────────────────


async def _buffer_body(
    receive: Receive, limit: int = MAX_ANONYMOUS_BODY
) -> tuple[Optional[bytes], Receive]:
    """Drain the request body and return a receive that replays it.

    Stops reading and returns None once the body grows past ``limit``.
    """
    chunks = []
    size = 0
    while True:
        message = await receive()
        if message["type"] != "http.request":
            break
        chunk = message.get("body", b"")
        size += len(chunk)
        if size > limit:
            return None, receive
        chunks.append(chunk)
        if not message.get("more_body", False):
            break
    body = b"".join(chunks)
    replayed = False

    async def replay() -> Message:
        nonlocal replayed
        if not replayed:
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return body, replay


class GraphQLAuthMiddleware:
    """Authenticate requests to the GraphQL path; pass everything else."""

    def __init__(self, app: ASGIApp, path: str = "/graphql"):
        self.app = app
        self.path = path.rstrip("/")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope["path"].rstrip("/") != self.path:
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        try:
            token = parse_bearer(request.headers.get("authorization"))
            identity = await authenticate_bearer(token) if token else None
        except AuthenticationFailed as e:
            logger.info("auth.rejected", reason=e.reason, method=request.method)
            await unauthorized(e.message)(scope, receive, send)
            return

        if identity is not None:
            scope.setdefault("state", {})["identity"] = identity
            structlog.contextvars.bind_contextvars(user_id=identity.user_id)
            await self.app(scope, receive, send)
            return

        declared = request.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > MAX_ANONYMOUS_BODY:
            body = None
        else:
            body, receive = await _buffer_body(receive)
        if body is None:
            logger.info("auth.body_too_large", method=request.method)
            await too_large()(scope, receive, send)
            return

        if not is_public_request(request, body):
            logger.info("auth.rejected", reason="missing_credentials", method=request.method)
            await unauthorized("Authentication required")(scope, receive, send)
            return

        await self.app(scope, receive, send)
