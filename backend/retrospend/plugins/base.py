from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import PurePath

from retrospend.config import Settings
from retrospend.schemas.transaction import ParsedTransaction

ProgressCallback = Callable[[float, str], Awaitable[None]]


@dataclass
class ParseResult:
    transactions: list[ParsedTransaction]
    warnings: list[str] = field(default_factory=list)


class FileParserPlugin(ABC):
    name: str = ""
    supported_extensions: list[str] = []
    supported_media_types: list[str] = []

    @abstractmethod
    async def parse(
        self,
        file_content: bytes,
        filename: str,
        file_type: str,
        config: Settings,
        on_progress: ProgressCallback | None = None,
    ) -> ParseResult:
        """Parse file content into normalized transactions plus warnings."""

    def detect(self, file_content: bytes, filename: str, file_type: str = "") -> bool:
        """Return True if this parser can handle the file, by name or declared type."""
        if PurePath(filename).suffix.lower() in self.supported_extensions:
            return True
        media_type = file_type.split(";", 1)[0].strip().lower()
        return media_type in self.supported_media_types
