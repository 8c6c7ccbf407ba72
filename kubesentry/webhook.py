"""HTTPS admission webhook: request parsing, review responses and the server loop."""

from __future__ import annotations

import http.server
import json
import logging
import os
import ssl
import threading
from typing import Any, Protocol

from .matching import GroupVersionResource
from .rules import AdmissionAttributes, UserInfo

log = logging.getLogger(__name__)

FILE_POLL_INTERVAL = 2.0
_TEXT_PLAIN = "text/plain; charset=utf-8"
_ACCEPTED = 202
_FORBIDDEN = 403

Response = tuple[int, str, bytes]


class StatusError(Exception):
    """An error that carries an API status: reason, message and HTTP code."""

    def __init__(self, message: str, reason: str = "", code: int = 500) -> None:
        super().__init__(message)
        self.message = message
        self.reason = reason
        self.code = code


class AdmissionRequestError(ValueError):
    """Raised when an admission review request cannot be used."""


class _Validator(Protocol):
    def handles(self, operation: str) -> bool: ...

    def validate(self, attrs: AdmissionAttributes) -> None: ...


def parse_admission_review(content_type: str, body: bytes | str) -> dict:
    """Decode an admission review and check that it holds a request."""
    if content_type != "application/json":
        raise AdmissionRequestError(
            f'Content-Type: "{content_type}" should be "application/json"'
        )
    if not body:
        raise AdmissionRequestError("admission request body is empty")
    try:
        review = json.loads(body)
    except (ValueError, UnicodeDecodeError) as exc:
        raise AdmissionRequestError(f"could not parse admission review request: {exc}") from exc
    if not isinstance(review, dict):
        raise AdmissionRequestError(
            "could not parse admission review request: not a JSON object"
        )
    request = review.get("request")
    if request is None:
        raise AdmissionRequestError("admission review can't be used: Request field is nil")
    if not isinstance(request, dict):
        raise AdmissionRequestError(
            "could not parse admission review request: request is not an object"
        )
    return review


def review_response(
    uid: str, error: BaseException | None, attrs: AdmissionAttributes | None
) -> dict[str, Any]:
    """Build the review sent back; requests are always allowed, denials only audited."""
    status = _ACCEPTED if error is None else _FORBIDDEN
    reason = ""
    message = "valid" if error is None else str(error)
    if isinstance(error, StatusError):
        reason, message, status = error.reason, error.message, error.code

    if status != _ACCEPTED:
        log.debug("admission audit: %s (attrs=%r)", error, attrs)

    result: dict[str, Any] = {"metadata": {}, "code": _ACCEPTED}
    if message:
        result["message"] = message
    if reason:
        result["reason"] = reason
    return {
        "kind": "AdmissionReview",
        "apiVersion": "admission.k8s.io/v1",
        "response": {"uid": uid, "allowed": True, "status": result},
    }


def _expected_gvk(request: dict) -> tuple[str, str, str]:
    kind = request.get("kind") or {}
    return (kind.get("group") or "", kind.get("version") or "", kind.get("kind") or "")


def _object_gvk(raw: dict) -> tuple[str, str, str]:
    group, _, version = str(raw.get("apiVersion") or "").rpartition("/")
    return (group, version, str(raw.get("kind") or ""))


def _format_gvk(gvk: tuple[str, str, str]) -> str:
    group, version, kind = gvk
    return f"{group}/{version}, Kind={kind}"


def _decode_object(raw: Any, expected: tuple[str, str, str]) -> dict | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise AdmissionRequestError("couldn't decode object: not a JSON object")
    gvk = _object_gvk(raw)
    if gvk != expected:
        raise AdmissionRequestError(
            f"unexpected GVK {_format_gvk(gvk)}. Expected {_format_gvk(expected)}"
        )
    return raw


def _user_info(data: Any) -> UserInfo:
    data = data if isinstance(data, dict) else {}
    extra = data.get("extra") or {}
    return UserInfo(
        name=data.get("username") or "",
        uid=data.get("uid") or "",
        groups=list(data.get("groups") or []),
        extra={str(key): list(values or []) for key, values in extra.items()},
    )


def _attributes(request: dict, obj: dict | None, old: dict | None) -> AdmissionAttributes:
    group, version, kind = _expected_gvk(request)
    resource = request.get("resource") or {}
    return AdmissionAttributes(
        object=obj,
        old_object=old,
        kind=kind,
        kind_group=group,
        kind_version=version,
        namespace=request.get("namespace") or "",
        name=request.get("name") or "",
        resource=GroupVersionResource(
            resource.get("group") or "",
            resource.get("version") or "",
            resource.get("resource") or "",
        ),
        subresource=request.get("subResource") or "",
        operation=request.get("operation") or "",
        options=None,
        dry_run=False,
        user_info=_user_info(request.get("userInfo")),
    )


def _error_response(status: int, message: str) -> Response:
    return status, _TEXT_PLAIN, (message + "\n").encode("utf-8")


def _parse_addr(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"address {addr!r} has no port")
    return host, int(port)


class _Server(http.server.ThreadingHTTPServer):
    daemon_threads = True


class AdmissionWebhook:
    """Serves /health and /validate over TLS, restarting when the key pair changes."""

    def __init__(
        self,
        addr: str,
        cert_file: str | os.PathLike,
        key_file: str | os.PathLike,
        validator: _Validator,
        watcher: Any = None,
        poll_interval: float = FILE_POLL_INTERVAL,
    ) -> None:
        self.addr = addr
        self.cert_file = cert_file
        self.key_file = key_file
        self.validator = validator
        self.watcher = watcher
        self.poll_interval = poll_interval

    def handle_health(self) -> Response:
        return 200, _TEXT_PLAIN, b"OK"

    def handle_validate(self, content_type: str, body: bytes | str) -> Response:
        """Answer one admission review; returns status, content type and body."""
        try:
            review = parse_admission_review(content_type, body)
        except AdmissionRequestError as exc:
            return _error_response(400, str(exc))

        request = review["request"]
        uid = request.get("uid") or ""
        error: BaseException | None = None
        attrs: AdmissionAttributes | None = None

        if self.validator.handles(request.get("operation") or ""):
            expected = _expected_gvk(request)
            try:
                old = _decode_object(request.get("oldObject"), expected)
                obj = _decode_object(request.get("object"), expected)
            except AdmissionRequestError as exc:
                log.error("review response (uid=%s, status=400): %s", uid, exc)
                return _error_response(400, str(exc))
            attrs = _attributes(request, obj, old)
            try:
                self.validator.validate(attrs)
            except Exception as exc:  # the validator's verdict travels as an error
                error = exc

        response = review_response(uid, error, attrs)
        try:
            out = json.dumps(response).encode("utf-8")
        except (TypeError, ValueError) as exc:
            log.error("review response (uid=%s, status=500): %s", uid, exc)
            return _error_response(500, str(exc))
        return 200, "application/json", out

    def _handler_class(self) -> type[http.server.BaseHTTPRequestHandler]:
        webhook = self

        class _Handler(http.server.BaseHTTPRequestHandler):
            def _dispatch(self) -> None:
                path = self.path.split("?", 1)[0]
                if path == "/health":
                    status, ctype, payload = webhook.handle_health()
                elif path == "/validate":
                    length = int(self.headers.get("Content-Length") or 0)
                    body = self.rfile.read(length) if length > 0 else b""
                    status, ctype, payload = webhook.handle_validate(
                        self.headers.get("Content-Type", ""), body
                    )
                else:
                    status, ctype, payload = _error_response(404, "404 page not found")
                self.send_response(status)
                self.send_header("Content-Type", ctype)
                self.send_header("Content-Length", str(len(payload)))
                self.end_headers()
                self.wfile.write(payload)

            do_GET = do_POST = do_PUT = do_DELETE = do_PATCH = _dispatch

            def log_message(self, format: str, *args: Any) -> None:
                log.debug("webhook: " + format, *args)

        return _Handler

    def _launch(self) -> _Server:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.load_cert_chain(self.cert_file, self.key_file)
        server = _Server(_parse_addr(self.addr), self._handler_class())
        try:
            server.socket = context.wrap_socket(server.socket, server_side=True)
        except Exception:
            server.server_close()
            raise
        threading.Thread(target=server.serve_forever, name="webhook-server", daemon=True).start()
        return server

    @staticmethod
    def _stop_server(server: _Server) -> None:
        server.shutdown()
        server.server_close()

    def _file_state(self) -> tuple[tuple[str, float | str], ...]:
        state = []
        for path in (self.cert_file, self.key_file):
            try:
                state.append((str(path), os.stat(path).st_mtime))
            except OSError as exc:
                state.append((str(path), str(exc)))
        return tuple(state)

    def run(self, stop_event: threading.Event) -> None:
        """Serve until *stop_event* is set; listen and TLS errors are raised."""
        log.info("starting webhook HTTP server")
        server = self._launch()
        state = self._file_state()
        try:
            while not stop_event.wait(self.poll_interval):
                current = self._file_state()
                if current == state:
                    continue
                state = current
                log.info("TLS input has changed, restarting HTTP server")
                self._stop_server(server)
                server = self._launch()
        finally:
            self._stop_server(server)
            log.info("stopping webhook HTTP server")