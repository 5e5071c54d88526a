######################################################################################################################

"""httpx transport that logs outgoing email API traffic with secrets redacted."""

######################################################################################################################

import json
import logging
import typing as T

import httpx

######################################################################################################################

# global, re-assignable
L = logging.getLogger("httpx.transport")


def transport_set_logger(logger: logging.Logger) -> None:
    # pylint: disable-next=global-statement
    global L
    if logger is not None:
        L = logger


######################################################################################################################

_MASK = "*********"

# lowercase; email bodies carry the reset code
_REDACTED_FIELDS = frozenset({"code", "passcode", "new_passcode", "password", "text", "html", "api_key"})
_REDACTED_HEADERS = frozenset({"authorization", "cookie", "set-cookie", "x-api-key"})


def redact(obj: T.Any, fields: T.AbstractSet[str] = _REDACTED_FIELDS) -> T.Any:
    """Return a copy of ``obj`` with sensitive mapping keys masked."""

    if isinstance(obj, httpx.Headers):
        return httpx.Headers([(k, _MASK if k.lower() in fields else v) for k, v in obj.multi_items()])

    if isinstance(obj, dict):
        return {k: _MASK if str(k).lower() in fields else redact(v, fields) for k, v in obj.items()}

    if isinstance(obj, (list, tuple)):
        return type(obj)(redact(v, fields) for v in obj)

    return obj


def _body_for_log(content: bytes) -> str:
    text = content.decode("utf-8", errors="replace")
    try:
        return json.dumps(redact(json.loads(text)), separators=(",", ":"))

    except (json.JSONDecodeError, TypeError):
        return text[:300]


######################################################################################################################


class HttpxLogTransport(httpx.BaseTransport):
    """Wraps another transport and logs each exchange at DEBUG level."""

    def __init__(self, transport: httpx.BaseTransport):
        self.transport = transport

    @staticmethod
    def _log_message(prefix: str, headers: httpx.Headers, content: bytes) -> None:
        L.debug(f"{prefix} Headers: {redact(headers, _REDACTED_HEADERS)}")
        if content:
            L.debug(f"{prefix} Body: {_body_for_log(content)}")

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        debug = L.isEnabledFor(logging.DEBUG)
        if debug:
            L.debug(f"{request.method} {request.url}")
            self._log_message("Request", request.headers, request.read())

        response = self.transport.handle_request(request)
        response.read()

        if debug:
            L.debug(f"{request.url} -> {response.status_code}")
            self._log_message("Response", response.headers, response.content)

        # content is already decoded, so drop the encoding headers
        headers = [
            (k, v)
            for k, v in response.headers.multi_items()
            if k.lower() not in {"content-encoding", "content-length"}
        ]
        return httpx.Response(
            status_code=response.status_code,
            headers=headers,
            content=response.content,
            extensions=response.extensions,
        )

    def close(self) -> None:
        self.transport.close()


######################################################################################################################
