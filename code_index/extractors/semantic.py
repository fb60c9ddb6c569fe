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

"""Semantic symbol extractor backed by an external language server.

The server is asked for ``textDocument/documentSymbol`` per file. Results
carry precise spans and fully qualified containers. Backend failures are
soft: when the server is missing, dies, or exceeds the per-file timeout,
the file is handed to the structural extractor instead.
"""

import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from code_index.errors import BackendUnavailable
from code_index.extractors.base import SymbolExtractor
from code_index.extractors.structural import StructuralExtractor
from code_index.lsp.client import LSPClient
from code_index.lsp.config import LSPServerConfig
from code_index.models import ExtractedSymbol, SymbolKind

logger = logging.getLogger(__name__)

# LSP SymbolKind number -> index kind. Unlisted kinds are skipped.
LSP_SYMBOL_KINDS: Dict[int, SymbolKind] = {
    3: SymbolKind.NAMESPACE,
    5: SymbolKind.CLASS,
    6: SymbolKind.METHOD,
    7: SymbolKind.PROPERTY,
    8: SymbolKind.FIELD,
    9: SymbolKind.CONSTRUCTOR,
    10: SymbolKind.ENUM,
    11: SymbolKind.INTERFACE,
    12: SymbolKind.METHOD,
    22: SymbolKind.FIELD,
    23: SymbolKind.STRUCT,
    24: SymbolKind.EVENT,
}


class SemanticExtractor(SymbolExtractor):
    """Delegates extraction to a language server, falling back to a structural scan."""

    name = "semantic"

    def __init__(
        self,
        root: Path,
        server_config: LSPServerConfig,
        timeout: float = 10.0,
        fallback: Optional[SymbolExtractor] = None,
        client_factory: Optional[Callable[[], Any]] = None,
    ):
        """Initialize the semantic extractor.

        Args:
            root: Index root (becomes the LSP workspace root)
            server_config: Language server to launch
            timeout: Per-file documentSymbol timeout in seconds
            fallback: Extractor used when the server cannot answer
            client_factory: Builds the LSP client (tests inject fakes here)
        """
        self.root = root
        self.server_config = server_config
        self.timeout = timeout
        self.fallback = fallback or StructuralExtractor()
        self._client_factory = client_factory or (
            lambda: LSPClient(server_config, root.as_uri())
        )
        self._client: Optional[Any] = None
        self._unavailable = False
        self._lock = threading.Lock()

    def _get_client(self) -> Any:
        with self._lock:
            if self._unavailable:
                raise BackendUnavailable(f"{self.server_config.name} unavailable")
            if self._client is None:
                client = self._client_factory()
                if not client.start(timeout=self.timeout):
                    self._unavailable = True
                    logger.warning(
                        f"Semantic backend {self.server_config.name} unavailable, "
                        f"using structural extraction"
                    )
                    raise BackendUnavailable(f"{self.server_config.name} failed to start")
                self._client = client
            elif not self._client.is_running:
                self._unavailable = True
                logger.warning(
                    f"Semantic backend {self.server_config.name} exited, "
                    f"using structural extraction"
                )
                raise BackendUnavailable(f"{self.server_config.name} exited")
            return self._client

    def extract(self, path: str, content: str) -> List[ExtractedSymbol]:
        try:
            client = self._get_client()
            uri = (self.root / path).as_uri()
            raw = client.document_symbols(uri, content, timeout=self.timeout)
        except BackendUnavailable as e:
            logger.debug(f"Structural fallback for {path}: {e}")
            return self.fallback.extract(path, content)
        except TimeoutError:
            logger.warning(
                f"Semantic extraction timed out for {path} after {self.timeout}s, "
                f"using structural extraction"
            )
            return self.fallback.extract(path, content)
        except RuntimeError as e:
            logger.warning(f"Semantic extraction failed for {path}: {e}")
            return self.fallback.extract(path, content)

        symbols: List[ExtractedSymbol] = []
        self._flatten(raw, None, None, symbols)
        return symbols

    def _flatten(
        self,
        items: List[Dict[str, Any]],
        container: Optional[str],
        namespace: Optional[str],
        out: List[ExtractedSymbol],
    ) -> None:
        """Flatten DocumentSymbol trees (or SymbolInformation lists) in source order."""
        for item in items:
            kind = LSP_SYMBOL_KINDS.get(item.get("kind"))
            name = str(item.get("name", "")).split("(")[0].strip()

            if "location" in item:
                # Flat SymbolInformation: the server supplies the container.
                span = item["location"]["range"]
                selection = span
                item_container = item.get("containerName") or container
            else:
                span = item["range"]
                selection = item.get("selectionRange", span)
                item_container = container

            if kind is not None and name:
                out.append(
                    ExtractedSymbol(
                        name=name,
                        kind=kind,
                        start_line=selection["start"]["line"] + 1,
                        end_line=span["end"]["line"] + 1,
                        column=selection["start"]["character"] + 1,
                        container=item_container,
                        namespace=namespace,
                    )
                )

            children = item.get("children") or []
            if not children:
                continue
            if kind == SymbolKind.NAMESPACE:
                child_namespace = f"{namespace}.{name}" if namespace else name
                self._flatten(children, None, child_namespace, out)
            else:
                parent = item_container if item_container is not None else namespace
                qualified = f"{parent}.{name}" if parent else name
                self._flatten(children, qualified, namespace, out)

    def close(self) -> None:
        with self._lock:
            client, self._client = self._client, None
        if client is not None:
            client.stop()
