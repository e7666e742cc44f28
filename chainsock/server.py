"""
chainsock socket server.

Responsibilities:
- Own one Unix stream socket path (a live listener there makes start fail,
  a stale socket file is removed).
- Serve one request per connection: read a frame, dispatch it to the
  BlockchainService, write the response frame, close.
- Turn every failure into an error record so the accept loop keeps going.
- Shut down in order: stop accepting, close the listener, drain in-flight
  connections, stop the EVM adapter, remove the socket file.

Usage:

  srv = ChainSockServer("http://127.0.0.1:8545", with_timeout(10), socket_path="./domain.sock")
  with srv:
      ...
"""
from __future__ import annotations

import contextlib
import errno
import os
import socket
import socketserver
import stat
import threading
from typing import Optional

from .abi import AbiCatalog
from .config import DEFAULT_SOCKET_PATH, Option, build_config
from .deadline import Deadline
from .errors import ChainSockError, ErrorKind
from .evm import EvmAdapter
from .handlers import BlockchainService
from .protocol import Envelope, read_frame, redact, write_frame

WRITE_GRACE = 1.0  # seconds a response write may take past the request deadline
POLL_INTERVAL = 0.1


def _claim_socket_path(path: str) -> None:
    """Fail if someone is listening on `path`; unlink it if it is a stale socket."""
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return
    if not stat.S_ISSOCK(st.st_mode):
        raise OSError(errno.EEXIST, f"{path} exists and is not a socket")

    peer = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        peer.settimeout(1.0)
        peer.connect(path)
    except (ConnectionRefusedError, FileNotFoundError):
        with contextlib.suppress(FileNotFoundError):
            os.unlink(path)
        return
    finally:
        peer.close()
    raise OSError(errno.EADDRINUSE, f"a server is already listening on {path}")


# -----------------------------
# socketserver plumbing
# -----------------------------
class ThreadingUnixServer(socketserver.ThreadingMixIn, socketserver.UnixStreamServer):
    daemon_threads = True
    block_on_close = False

    def __init__(self, path: str, RequestHandlerClass, owner: "ChainSockServer"):
        self.owner = owner
        super().__init__(path, RequestHandlerClass)

    def process_request(self, request, client_address):
        # count before the worker thread exists so stop() never misses it
        self.owner._enter()
        try:
            super().process_request(request, client_address)
        except Exception:
            self.owner._leave()
            raise

    def process_request_thread(self, request, client_address):
        try:
            super().process_request_thread(request, client_address)
        finally:
            self.owner._leave()

    def handle_error(self, request, client_address):
        self.owner.logger.exception("connection handler crashed")


class ConnectionHandler(socketserver.BaseRequestHandler):
    def setup(self):
        self.owner: ChainSockServer = self.server.owner
        self.logger = self.owner.logger
        self.deadline = Deadline(self.owner.timeout)

    def handle(self):
        mtype = ""
        try:
            raw = read_frame(self.request, self.owner.max_frame, self.deadline)
            try:
                env = Envelope.decode(raw)
            except ChainSockError:
                self.logger.warning("bad envelope: %s", redact(raw))
                raise
            mtype = env.type
            resp = self.owner.service.dispatch(env, self.deadline)
        except ChainSockError as e:
            self.logger.warning("request %s failed: %s", mtype or "<unknown>", e)
            resp = Envelope.error(mtype, e)
        except Exception as e:
            self.logger.exception("unexpected error handling %s", mtype or "<unknown>")
            resp = Envelope.error(mtype, ChainSockError(ErrorKind.INTERNAL, f"{type(e).__name__}: {e}"))
        self._reply(resp)

    def _reply(self, env: Envelope) -> None:
        try:
            self.request.settimeout(max(self.deadline.left(), WRITE_GRACE))
            write_frame(self.request, env.encode())
        except (ChainSockError, OSError) as e:
            self.logger.warning("failed to write %s response: %s", env.type or "error", e)


# -----------------------------
# Server
# -----------------------------
class ChainSockServer:
    def __init__(self, endpoint: Optional[str] = None, *options: Option, socket_path: str = DEFAULT_SOCKET_PATH,
                 service: Optional[BlockchainService] = None):
        cfg = build_config(*options)
        self.socket_path = str(socket_path)
        self.timeout = cfg.timeout
        self.shutdown_timeout = cfg.shutdown_timeout
        self.max_frame = cfg.max_frame
        self.logger = cfg.logger

        if service is None:
            if not endpoint:
                raise ValueError("an RPC endpoint is required when no service is given")
            catalog = AbiCatalog(bytecode_overrides=cfg.bytecode_overrides)
            evm = EvmAdapter(endpoint, cfg.timeout, cfg.logger)
            service = BlockchainService(catalog, evm, cfg.logger)
        self.service = service

        self._lock = threading.Lock()
        self._server: Optional[ThreadingUnixServer] = None
        self._thread: Optional[threading.Thread] = None
        self._inflight = 0
        self._idle = threading.Condition()

    @property
    def running(self) -> bool:
        return self._server is not None

    def start(self) -> None:
        with self._lock:
            if self._server is not None:
                raise RuntimeError("server already started")
            _claim_socket_path(self.socket_path)
            srv = ThreadingUnixServer(self.socket_path, ConnectionHandler, self)
            try:
                self.service.evm.start()
            except Exception:
                srv.server_close()
                with contextlib.suppress(FileNotFoundError):
                    os.unlink(self.socket_path)
                raise
            self._server = srv
            self._thread = threading.Thread(
                target=srv.serve_forever, kwargs={"poll_interval": POLL_INTERVAL}, name="chainsock-server", daemon=True
            )
            self._thread.start()
        self.logger.info("chainsock listening on %s (timeout=%gs)", self.socket_path, self.timeout)

    def stop(self, shutdown_timeout: Optional[float] = None) -> None:
        with self._lock:
            srv, thread = self._server, self._thread
            self._server, self._thread = None, None
        if srv is None:
            return

        srv.shutdown()
        srv.server_close()
        if thread is not None:
            thread.join()

        wait = self.shutdown_timeout if shutdown_timeout is None else shutdown_timeout
        with self._idle:
            if not self._idle.wait_for(lambda: self._inflight == 0, timeout=wait):
                self.logger.warning("%d connection(s) still running after %gs", self._inflight, wait)

        self.service.evm.stop()
        with contextlib.suppress(FileNotFoundError):
            os.unlink(self.socket_path)
        self.logger.info("chainsock stopped")

    def __enter__(self) -> "ChainSockServer":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    # in-flight connection accounting, driven by ThreadingUnixServer
    def _enter(self) -> None:
        with self._idle:
            self._inflight += 1

    def _leave(self) -> None:
        with self._idle:
            self._inflight -= 1
            if self._inflight == 0:
                self._idle.notify_all()
