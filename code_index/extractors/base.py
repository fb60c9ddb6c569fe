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

"""Symbol extractor interface."""

from abc import ABC, abstractmethod
from typing import List

from code_index.models import ExtractedSymbol


class SymbolExtractor(ABC):
    """Turns one file's content into an ordered list of symbols.

    Implementations must be safe to call from several worker threads at
    once and must raise ExtractionError (never return partial results) when
    a file cannot be parsed.
    """

    name: str = "base"

    @abstractmethod
    def extract(self, path: str, content: str) -> List[ExtractedSymbol]:
        """Extract symbols from file content.

        Args:
            path: Root-relative path of the file (for diagnostics)
            content: Decoded file content

        Returns:
            Symbols in source order

        Raises:
            ExtractionError: If the content cannot be parsed
        """

    def close(self) -> None:
        """Release backend resources."""
