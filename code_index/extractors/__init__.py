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

"""Pluggable symbol extraction backends.

The backend is chosen by ``IndexConfiguration.extractor``:
- ``structural``: offline regex/brace scanner (always available)
- ``semantic``: language server via LSP, falling back to structural
"""

from code_index.config import IndexConfiguration
from code_index.extractors.base import SymbolExtractor
from code_index.extractors.semantic import LSP_SYMBOL_KINDS, SemanticExtractor
from code_index.extractors.structural import StructuralExtractor, mask_source
from code_index.lsp.config import resolve_server_config


def create_extractor(config: IndexConfiguration) -> SymbolExtractor:
    """Build the extractor selected by the configuration."""
    structural = StructuralExtractor()
    if config.extractor == "semantic":
        return SemanticExtractor(
            root=config.root,
            server_config=resolve_server_config(config),
            timeout=config.extraction_timeout,
            fallback=structural,
        )
    return structural


__all__ = [
    "SymbolExtractor",
    "StructuralExtractor",
    "SemanticExtractor",
    "LSP_SYMBOL_KINDS",
    "create_extractor",
    "mask_source",
]
