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

"""Index configuration.

Configuration is fixed when an index is opened; changing it requires
reopening the index. It can be built directly, from a mapping, or from a
YAML file:

```yaml
# <root>/.code-index.yaml
include: ["**/*.cs"]
exclude: ["**/obj/**", "**/bin/**", "**/Generated/**"]
extractor: semantic
lsp_server: csharp-ls
concurrency: 4
watch: true
```
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Set, Union

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from code_index.ignore_patterns import (
    DEFAULT_EXCLUDE,
    DEFAULT_INCLUDE,
    DEFAULT_SKIP_DIRS,
    PathFilter,
)
from code_index.lsp.config import LANGUAGE_SERVERS

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".code-index.yaml"
DEFAULT_STORE_PATH = Path(".code-index") / "index.db"


def _default_concurrency() -> int:
    return max(1, min(4, os.cpu_count() or 1))


class IndexConfiguration(BaseModel):
    """Process-wide settings for one index root."""

    root: Path
    include: List[str] = Field(default_factory=lambda: list(DEFAULT_INCLUDE))
    exclude: List[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDE))
    skip_dirs: Set[str] = Field(default_factory=lambda: set(DEFAULT_SKIP_DIRS))

    # Extraction
    extractor: Literal["structural", "semantic"] = "structural"
    concurrency: int = Field(default_factory=_default_concurrency, ge=1)
    extraction_timeout: float = Field(default=10.0, gt=0)
    lsp_server: str = "csharp"
    lsp_command: Optional[List[str]] = None

    # Storage
    store_path: Optional[Path] = None

    # Build scheduling and watching
    watch: bool = False
    build_on_open: bool = False
    debounce_seconds: float = Field(default=0.5, ge=0)
    max_pending_events: int = Field(default=10000, ge=1)
    job_retention_seconds: float = Field(default=300.0, ge=0)

    # Query defaults
    page_size: int = Field(default=20, ge=1)
    reference_page_size: int = Field(default=50, ge=1)
    snippet_context: int = Field(default=2, ge=0)
    max_matches_per_file: int = Field(default=5, ge=1)
    max_snippet_chars: int = Field(default=400, ge=1)
    max_file_bytes: int = Field(default=2_000_000, ge=1)

    @field_validator("root")
    @classmethod
    def _resolve_root(cls, value: Path) -> Path:
        return Path(value).expanduser().resolve()

    @model_validator(mode="after")
    def _resolve_store_path(self) -> "IndexConfiguration":
        if self.store_path is None:
            self.store_path = self.root / DEFAULT_STORE_PATH
        elif not self.store_path.is_absolute():
            self.store_path = self.root / self.store_path
        return self

    @model_validator(mode="after")
    def _check_lsp_server(self) -> "IndexConfiguration":
        if self.lsp_server in LANGUAGE_SERVERS:
            return self
        by_name = {server.name.lower(): key for key, server in LANGUAGE_SERVERS.items()}
        key = by_name.get(self.lsp_server.lower())
        if key is not None:
            self.lsp_server = key
        elif not self.lsp_command:
            raise ValueError(
                f"Unknown language server '{self.lsp_server}'. "
                f"Known servers: {', '.join(sorted(LANGUAGE_SERVERS))} "
                f"(or set lsp_command)"
            )
        return self

    @property
    def path_filter(self) -> PathFilter:
        return PathFilter(self.include, self.exclude, self.skip_dirs)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], **overrides: Any) -> "IndexConfiguration":
        merged = dict(data or {})
        merged.update(overrides)
        return cls(**merged)

    @classmethod
    def from_yaml(cls, path: Union[str, Path], **overrides: Any) -> "IndexConfiguration":
        """Load configuration from a YAML file.

        A missing or relative ``root`` is resolved against the directory
        holding the YAML file.

        Args:
            path: YAML file to read
            **overrides: Values that take precedence over the file

        Returns:
            Validated configuration
        """
        path = Path(path)
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Index configuration in {path} must be a mapping")

        root = Path(overrides.pop("root", data.get("root", ".")))
        if not root.is_absolute():
            root = path.parent / root
        data["root"] = root
        logger.debug(f"Loaded index configuration from {path}")
        return cls.from_dict(data, **overrides)

    @classmethod
    def discover(cls, root: Union[str, Path], **overrides: Any) -> "IndexConfiguration":
        """Load ``<root>/.code-index.yaml`` if present, else use defaults."""
        config_file = Path(root) / CONFIG_FILENAME
        if config_file.is_file():
            return cls.from_yaml(config_file, root=Path(root).resolve(), **overrides)
        return cls(root=Path(root), **overrides)
