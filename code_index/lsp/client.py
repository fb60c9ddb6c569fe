# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Thread-based LSP client used by the semantic extraction backend.

Extraction runs on a worker pool, so requests are issued from several
threads at once. A single reader thread parses server output and resolves
``concurrent.futures.Future`` objects keyed by request id.
"""

import json
import logging
import os
import subprocess
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote, urlparse

from code_index.errors import BackendUnavailable
from code_index.lsp.config import LSPServerConfig

logger = logging.getLogger(__name__)


class LSPClient:
    """Client for communicating with a Language Server Protocol server."""

    def __init__(self, config: LSPServerConfig, root_uri: str):
        """Initialize the LSP client.

        Args:
            config: Server configuration
            root_uri: Root URI of the workspace
        """
        self.config = config
        self.root_uri = root_uri
        self._process: Optional[subprocess.Popen] = None
        self._request_id = 0
        self._pending_requests: Dict[int, Future] = {}
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._reader_thread: Optional[threading.Thread] = None
        self._initialized = False
        self._capabilities: Dict[str, Any] = {}

    @property
    def is_running(self) -> bool:
        """Check if the server process is running."""
        return self._process is not None and self._process.poll() is None

    def start(self, timeout: float = 30.0) -> bool:
        """Start and initialize the language server.

        Returns:
            True if started successfully
        """
        if self.is_running:
            logger.warning(f"Server {self.config.name} already running")
            return True

        cmd = self.config.command + self.config.args
        try:
            logger.info(f"Starting LSP server: {' '.join(cmd)}")
            self._process = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                bufsize=0,
                cwd=self._root_path(),
            )
        except FileNotFoundError:
            logger.warning(f"LSP server not found: {self.config.command[0]}")
            if self.config.install_command:
                logger.info(f"Install with: {self.config.install_command}")
            self._process = None
            return False
        except OSError as e:
            logger.warning(f"Failed to launch LSP server {self.config.name}: {e}")
            self._process = None
            return False

        self._reader_thread = threading.Thread(
            target=self._read_messages,
            name=f"lsp-reader-{self.config.name}",
            daemon=True,
        )
        self._reader_thread.start()

        try:
            self._initialize(timeout)
        except (BackendUnavailable, TimeoutError, RuntimeError) as e:
            logger.warning(f"LSP server {self.config.name} failed to initialize: {e}")
            self._terminate()
            return False
        return True

    def stop(self) -> None:
        """Shut the language server down."""
        if not self.is_running:
            self._terminate()
            return

        try:
            self.request("shutdown", None, timeout=5.0)
            self.notify("exit", None)
            self._process.wait(timeout=5)
        except (BackendUnavailable, TimeoutError, RuntimeError, subprocess.TimeoutExpired) as e:
            logger.debug(f"Error during LSP shutdown: {e}")
        finally:
            self._terminate()
        logger.info(f"LSP server {self.config.name} stopped")

    def _terminate(self) -> None:
        if self._process is not None and self._process.poll() is None:
            self._process.kill()
        self._process = None
        self._initialized = False
        self._fail_pending(BackendUnavailable(f"Server {self.config.name} stopped"))

    def _root_path(self) -> Optional[str]:
        parsed = urlparse(self.root_uri)
        if parsed.scheme != "file":
            return None
        path = Path(unquote(parsed.path))
        return str(path) if path.is_dir() else None

    def _initialize(self, timeout: float) -> None:
        params = {
            "processId": os.getpid(),
            "rootUri": self.root_uri,
            "capabilities": {
                "textDocument": {
                    "documentSymbol": {"hierarchicalDocumentSymbolSupport": True},
                    "synchronization": {"didSave": False},
                },
                "workspace": {"workspaceFolders": True, "configuration": True},
            },
            "initializationOptions": self.config.initialization_options,
            "workspaceFolders": [{"uri": self.root_uri, "name": Path(self.root_uri).name}],
        }

        result = self.request("initialize", params, timeout=timeout) or {}
        self._capabilities = result.get("capabilities", {})
        self._initialized = True
        self.notify("initialized", {})

        if self.config.settings:
            self.notify("workspace/didChangeConfiguration", {"settings": self.config.settings})

        logger.info(f"LSP server {self.config.name} initialized")

    def request(self, method: str, params: Any, timeout: float = 30.0) -> Any:
        """Send a request and wait for its result.

        Raises:
            BackendUnavailable: If the server is not running or exits
            TimeoutError: If no response arrives within ``timeout``
            RuntimeError: If the server answers with an error
        """
        if not self.is_running:
            raise BackendUnavailable(f"Server {self.config.name} not running")

        future: Future = Future()
        with self._lock:
            self._request_id += 1
            request_id = self._request_id
            self._pending_requests[request_id] = future

        self._write_message({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})

        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            with self._lock:
                self._pending_requests.pop(request_id, None)
            self.notify("$/cancelRequest", {"id": request_id})
            raise TimeoutError(f"Request {method} timed out after {timeout}s")

    def notify(self, method: str, params: Any) -> None:
        """Send a notification (no response expected)."""
        if not self.is_running:
            return
        self._write_message({"jsonrpc": "2.0", "method": method, "params": params})

    def document_symbols(self, uri: str, text: str, timeout: float) -> List[Dict[str, Any]]:
        """Open a document, fetch its symbols, and close it again."""
        self.notify(
            "textDocument/didOpen",
            {
                "textDocument": {
                    "uri": uri,
                    "languageId": self.config.language_id,
                    "version": 1,
                    "text": text,
                }
            },
        )
        try:
            result = self.request(
                "textDocument/documentSymbol", {"textDocument": {"uri": uri}}, timeout=timeout
            )
        finally:
            self.notify("textDocument/didClose", {"textDocument": {"uri": uri}})
        return result or []

    def _write_message(self, message: Dict[str, Any]) -> None:
        if not self._process or not self._process.stdin:
            raise BackendUnavailable(f"Server {self.config.name} not running")

        content = json.dumps(message).encode("utf-8")
        header = f"Content-Length: {len(content)}\r\n\r\n".encode("ascii")

        with self._write_lock:
            try:
                self._process.stdin.write(header + content)
                self._process.stdin.flush()
            except (BrokenPipeError, OSError) as e:
                logger.error(f"Failed to write to server: {e}")
                raise BackendUnavailable(f"Server {self.config.name} pipe closed") from e

    def _read_messages(self) -> None:
        process = self._process
        if process is None or process.stdout is None:
            return

        buffer = b""
        while True:
            try:
                chunk = process.stdout.read(4096)
            except (OSError, ValueError) as e:
                logger.debug(f"LSP reader stopped: {e}")
                break
            if not chunk:
                break
            buffer += chunk
            while True:
                message, buffer = self._parse_message(buffer)
                if message is None:
                    break
                self._handle_message(message)

        self._fail_pending(BackendUnavailable(f"Server {self.config.name} exited"))

    def _parse_message(self, buffer: bytes) -> Tuple[Optional[Dict[str, Any]], bytes]:
        """Parse one message from the buffer.

        Returns:
            Tuple of (message or None, remaining buffer)
        """
        header_end = buffer.find(b"\r\n\r\n")
        if header_end == -1:
            return None, buffer

        header = buffer[:header_end].decode("ascii", errors="replace")
        content_length = 0
        for line in header.split("\r\n"):
            if line.lower().startswith("content-length:"):
                content_length = int(line.split(":")[1].strip())
                break

        content_start = header_end + 4
        if content_length == 0:
            return None, buffer[content_start:]

        content_end = content_start + content_length
        if len(buffer) < content_end:
            return None, buffer

        content = buffer[content_start:content_end].decode("utf-8", errors="replace")
        remaining = buffer[content_end:]
        try:
            return json.loads(content), remaining
        except json.JSONDecodeError:
            logger.error(f"Failed to parse message: {content[:100]}")
            return None, remaining

    def _handle_message(self, message: Dict[str, Any]) -> None:
        if "id" in message and "method" in message:
            # Server-initiated request (workspace/configuration, progress
            # registration, ...). A null result keeps the server going.
            try:
                self._write_message({"jsonrpc": "2.0", "id": message["id"], "result": None})
            except BackendUnavailable as e:
                logger.debug(f"Could not answer {message['method']}: {e}")
            return

        if "id" in message:
            with self._lock:
                future = self._pending_requests.pop(message["id"], None)
            if future is None:
                return
            if "error" in message:
                future.set_exception(
                    RuntimeError(message["error"].get("message", "Unknown error"))
                )
            else:
                future.set_result(message.get("result"))
            return

        if message.get("method") == "window/logMessage":
            logger.debug(f"[{self.config.name}] {message.get('params', {}).get('message', '')}")

    def _fail_pending(self, error: Exception) -> None:
        with self._lock:
            pending = list(self._pending_requests.values())
            self._pending_requests.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)
