"""
HTTP request pipeline and threaded server with port fallback and graceful drain
"""

import base64
import binascii
import hmac
import socket
import threading
import time
from http.server import ThreadingHTTPServer, BaseHTTPRequestHandler
from typing import Dict, List, Optional, Sequence
from urllib.parse import parse_qsl, urlsplit

from config import AuthenticationConfig, CORSConfig, ServiceConfig
from exceptions import (AuthenticationError, ConfigurationError, FilterRejection, MethodNotAllowedError,
                        NotFoundError, RequestTimeoutError, ServiceUnavailableError, ValidationError,
                        WebformSyncError)
from filters import FilterEngine, split_host_port
from handlers import APIHandlers, Request, Response, error_response
from logger import logger
from routes import is_health_path, match_route

BASIC_REALM = 'Basic realm="Webform Sync"'


class RequestPipeline:
    """Runs every request through logging, origin, CORS, auth and body checks
    before dispatching it to a handler. The body is pulled off the socket only
    once the request has been admitted and routed. Holds no per-request state.
    """

    def __init__(self, handlers: APIHandlers, filters: FilterEngine, auth: AuthenticationConfig = None,
                 cors: CORSConfig = None, log_requests: bool = True, max_body_bytes: int = 1024 * 1024,
                 max_concurrent_requests: int = 64, slot_timeout: float = 15.0):
        self.handlers = handlers
        self.filters = filters
        self.auth = auth or AuthenticationConfig()
        self.cors = cors or CORSConfig(enabled=False)
        self.log_requests = log_requests
        self.max_body_bytes = max_body_bytes
        self.slot_timeout = slot_timeout
        self._slots = threading.BoundedSemaphore(max_concurrent_requests)

    @classmethod
    def from_config(cls, cfg: ServiceConfig, handlers: APIHandlers, filters: FilterEngine) -> 'RequestPipeline':
        return cls(
            handlers=handlers,
            filters=filters,
            auth=cfg.authentication,
            cors=cfg.cors,
            log_requests=cfg.logging.log_requests,
            max_body_bytes=cfg.performance.max_body_bytes,
            max_concurrent_requests=cfg.performance.max_concurrent_requests,
            slot_timeout=cfg.server.write_timeout,
        )

    def handle(self, request: Request) -> Response:
        """Logging stage wrapped around the rest of the pipeline"""
        start_time = time.time()
        response = self._process(request)
        self._apply_cors(request, response)
        if self.log_requests:
            duration_ms = (time.time() - start_time) * 1000
            logger.request(request.method, request.path, split_host_port(request.client_address),
                           response.status, duration_ms)
        return response

    def _process(self, request: Request) -> Response:
        try:
            self._check_origin(request)

            if request.method == "OPTIONS":
                return Response(status=204)

            self._authenticate(request)

            if request.content_length > self.max_body_bytes:
                raise ValidationError(f"Request body exceeds {self.max_body_bytes} bytes")

            match = match_route(request.method, request.path)
            if not match.found:
                if match.allowed_methods:
                    raise MethodNotAllowedError("Method not allowed",
                                                context={"allow": ", ".join(match.allowed_methods)})
                raise NotFoundError("Not found", context={"path": request.path})
            request.params = match.params
            request.load_body()

            if not self._slots.acquire(timeout=self.slot_timeout):
                raise ServiceUnavailableError("Server busy, try again later")
            try:
                return self.handlers.dispatch(match.route.handler, request)
            finally:
                self._slots.release()

        except AuthenticationError as e:
            response = error_response(e.status_code, e.client_message)
            if self.auth.type == "basic":
                response.headers["WWW-Authenticate"] = BASIC_REALM
            return response
        except WebformSyncError as e:
            if e.status_code >= 500:
                logger.error(f"Request {request.method} {request.path} failed: {e}")
            response = error_response(e.status_code, e.client_message)
            if isinstance(e, MethodNotAllowedError):
                response.headers["Allow"] = e.context["allow"]
            return response
        except Exception as e:
            logger.error(f"Unhandled error for {request.method} {request.path}: {e}", exc_info=True)
            return error_response(500, "Internal server error")

    def _check_origin(self, request: Request):
        if not self.filters.is_origin_allowed(request.client_address):
            raise FilterRejection("Access denied")

    def _authenticate(self, request: Request):
        """Token or basic credential check; health checks are exempt"""
        if not self.auth.enabled or is_health_path(request.path):
            return

        client = split_host_port(request.client_address)
        if self.auth.type == "token":
            token = self._extract_token(request)
            if not token or not hmac.compare_digest(token.encode(), self.auth.api_token.encode()):
                logger.auth_failed(client, "invalid or missing token")
                raise AuthenticationError("Invalid or missing token")

        elif self.auth.type == "basic":
            credentials = self._extract_basic_credentials(request)
            if credentials is None:
                logger.auth_failed(client, "missing credentials")
                raise AuthenticationError("Authentication required")
            username, password = credentials
            user_ok = hmac.compare_digest(username.encode(), self.auth.username.encode())
            password_ok = hmac.compare_digest(password.encode(), self.auth.password.encode())
            if not (user_ok and password_ok):
                logger.auth_failed(client, "invalid credentials")
                raise AuthenticationError("Invalid credentials")

    @staticmethod
    def _extract_token(request: Request) -> Optional[str]:
        header = request.header("Authorization")
        if header:
            if header.lower().startswith("bearer "):
                return header[7:].strip()
            return header.strip()
        return request.header("X-API-Token") or request.query.get("token")

    @staticmethod
    def _extract_basic_credentials(request: Request):
        header = request.header("Authorization", "")
        if not header.lower().startswith("basic "):
            return None
        try:
            decoded = base64.b64decode(header[6:].strip(), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return None
        if ":" not in decoded:
            return None
        username, password = decoded.split(":", 1)
        return username, password

    def _apply_cors(self, request: Request, response: Response):
        if not self.cors.enabled:
            return
        origin = request.header("Origin")
        if not origin:
            return
        if "*" in self.cors.allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = "*"
        elif origin in self.cors.allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Access-Control-Allow-Credentials"] = "true"
            response.headers["Vary"] = "Origin"
        else:
            return
        if request.method == "OPTIONS":
            response.headers["Access-Control-Allow-Methods"] = ", ".join(self.cors.allowed_methods)
            response.headers["Access-Control-Allow-Headers"] = ", ".join(self.cors.allowed_headers)
            response.headers["Access-Control-Max-Age"] = str(self.cors.max_age)


class SyncRequestHandler(BaseHTTPRequestHandler):
    """Adapts http.server to the transport-independent pipeline"""

    server_version = "WebformSync/1.0"
    protocol_version = "HTTP/1.1"

    def do_GET(self):
        self._dispatch()

    def do_POST(self):
        self._dispatch()

    def do_PUT(self):
        self._dispatch()

    def do_DELETE(self):
        self._dispatch()

    def do_OPTIONS(self):
        self._dispatch()

    def _dispatch(self):
        self.server.request_started(self.connection)
        try:
            self._handle_one()
        finally:
            self.server.request_finished(self.connection)

    def _handle_one(self):
        split = urlsplit(self.path)
        try:
            content_length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            content_length = -1
        if content_length < 0:
            # Unknown body length, so the connection cannot be reused
            self.close_connection = True
            content_length = 0

        request = Request(
            method=self.command,
            path=split.path,
            query=dict(parse_qsl(split.query, keep_blank_values=True)),
            headers=dict(self.headers.items()),
            client_address=self.client_address,
            content_length=content_length,
        )

        if content_length > 0:
            request.body_reader = lambda: self._read_body(content_length)

        response = self.server.pipeline.handle(request)
        if request.body_pending:
            # Rejected before the body was read, so the connection cannot be reused
            self.close_connection = True
        self._write_response(response)

    def _read_body(self, length: int) -> bytes:
        try:
            return self.rfile.read(length)
        except socket.timeout as e:
            logger.warning(f"Timed out reading request body from {self.client_address[0]}")
            self.close_connection = True
            raise RequestTimeoutError("Request timed out", original_error=e)

    def _write_response(self, response: Response):
        payload = response.encode()
        try:
            self.connection.settimeout(self.server.write_timeout)
            self.send_response(response.status)
            if response.body is not None:
                self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(payload)))
            for name, value in response.headers.items():
                self.send_header(name, value)
            if self.close_connection:
                self.send_header("Connection", "close")
            self.end_headers()
            if payload:
                self.wfile.write(payload)
            self.connection.settimeout(self.server.read_timeout)
        except (BrokenPipeError, ConnectionResetError, socket.timeout) as e:
            logger.warning(f"Failed to write response to {self.client_address[0]}: {e}")
            self.close_connection = True

    def log_message(self, format, *args):
        pass  # Requests are logged by the pipeline


class SyncHTTPServer(ThreadingHTTPServer):
    """Thread-per-connection server that tracks in-flight requests for draining"""

    daemon_threads = True
    block_on_close = False

    def __init__(self, server_address, pipeline: RequestPipeline, read_timeout: float = 15.0,
                 write_timeout: float = 15.0):
        self.pipeline = pipeline
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self._serving = False
        if ":" in server_address[0]:
            self.address_family = socket.AF_INET6
        self._in_flight = 0
        self._in_flight_cond = threading.Condition()
        self._connections: Dict[int, socket.socket] = {}
        self._connections_lock = threading.Lock()
        super().__init__(server_address, SyncRequestHandler)

    def serve_forever(self, poll_interval=0.5):
        self._serving = True
        try:
            super().serve_forever(poll_interval)
        finally:
            self._serving = False

    def handle_error(self, request, client_address):
        logger.warning(f"Connection error from {client_address[0]}")

    def get_request(self):
        conn, addr = super().get_request()
        conn.settimeout(self.read_timeout)
        with self._connections_lock:
            self._connections[id(conn)] = conn
        return conn, addr

    def shutdown_request(self, request):
        with self._connections_lock:
            self._connections.pop(id(request), None)
        super().shutdown_request(request)

    def request_started(self, connection):
        with self._in_flight_cond:
            self._in_flight += 1

    def request_finished(self, connection):
        with self._in_flight_cond:
            self._in_flight -= 1
            self._in_flight_cond.notify_all()

    @property
    def in_flight(self) -> int:
        with self._in_flight_cond:
            return self._in_flight

    def wait_for_idle(self, timeout: float) -> bool:
        """Block until no request is in flight or the timeout expires"""
        with self._in_flight_cond:
            return self._in_flight_cond.wait_for(lambda: self._in_flight == 0, timeout=timeout)

    def close_connections(self) -> int:
        """Force-close every client socket still open"""
        with self._connections_lock:
            connections = list(self._connections.values())
            self._connections.clear()
        for conn in connections:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass  # Already closed by the peer
            conn.close()
        return len(connections)

    def drain(self, grace_period: float):
        """Stop accepting, wait for in-flight requests, then close the rest"""
        if self._serving:
            self.shutdown()
        self.server_close()
        if not self.wait_for_idle(grace_period):
            logger.warning(f"Grace period expired with {self.in_flight} requests in flight")
        closed = self.close_connections()
        if closed:
            logger.info(f"Closed {closed} remaining connections")


def bind_server(host: str, port: int, fallback_ports: Sequence[int], pipeline: RequestPipeline,
                read_timeout: float = 15.0, write_timeout: float = 15.0) -> SyncHTTPServer:
    """Bind the preferred port, falling back to each alternative in order"""
    candidates: List[int] = [port] + [p for p in fallback_ports if p != port]
    for candidate in candidates:
        try:
            server = SyncHTTPServer((host, candidate), pipeline,
                                    read_timeout=read_timeout, write_timeout=write_timeout)
        except OSError as e:
            logger.warning(f"Port {candidate} is unavailable: {e}", host=host, port=candidate)
            continue
        if candidate != port:
            logger.info(f"Using fallback port {candidate}")
        return server
    raise ConfigurationError("No available ports found", context={"host": host, "ports": candidates})
