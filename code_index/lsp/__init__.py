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

"""Language Server Protocol transport for the semantic extraction backend."""

from code_index.lsp.client import LSPClient
from code_index.lsp.config import LANGUAGE_SERVERS, LSPServerConfig, resolve_server_config

__all__ = [
    "LSPClient",
    "LSPServerConfig",
    "LANGUAGE_SERVERS",
    "resolve_server_config",
]
