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

"""Language server configuration for the semantic extraction backend."""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from code_index.config import IndexConfiguration


@dataclass
class LSPServerConfig:
    """Configuration for a language server."""

    name: str  # Human-readable name
    language_id: str  # LSP language identifier
    file_extensions: List[str]  # File extensions this server handles
    command: List[str]  # Command to start the server
    args: List[str] = field(default_factory=list)  # Additional arguments
    initialization_options: Dict[str, Any] = field(default_factory=dict)
    settings: Dict[str, Any] = field(default_factory=dict)
    install_command: Optional[str] = None  # How to install the server


# Pre-configured C# language servers
LANGUAGE_SERVERS: Dict[str, LSPServerConfig] = {
    "csharp": LSPServerConfig(
        name="csharp-ls",
        language_id="csharp",
        file_extensions=[".cs"],
        command=["csharp-ls"],
        install_command="dotnet tool install --global csharp-ls",
    ),
    "omnisharp": LSPServerConfig(
        name="OmniSharp",
        language_id="csharp",
        file_extensions=[".cs"],
        command=["OmniSharp"],
        args=["-lsp"],
        settings={"RoslynExtensionsOptions": {"EnableAnalyzersSupport": False}},
        install_command="https://github.com/OmniSharp/omnisharp-roslyn/releases",
    ),
}


def resolve_server_config(config: "IndexConfiguration") -> LSPServerConfig:
    """Pick the server for an index, honoring an explicit command override."""
    base = LANGUAGE_SERVERS.get(config.lsp_server)
    if config.lsp_command:
        return LSPServerConfig(
            name=config.lsp_command[0],
            language_id=base.language_id if base else "csharp",
            file_extensions=base.file_extensions if base else [".cs"],
            command=list(config.lsp_command),
        )
    if base is None:
        raise ValueError(
            f"Unknown language server '{config.lsp_server}'. "
            f"Known servers: {', '.join(sorted(LANGUAGE_SERVERS))}"
        )
    return base
