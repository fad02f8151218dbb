"""
Knowledge-store sinks for finished transcripts.

A sink accepts the rendered transcript document plus metadata and returns an
opaque document id. What the store does with the document is outside this package.
"""

import json
import logging
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

import requests
from requests.exceptions import RequestException

logger = logging.getLogger(__name__)


class KnowledgeSink(ABC):
    """Destination for finished transcripts."""

    @abstractmethod
    def store(self, title: str, content: str, metadata: Dict[str, Any]) -> str:
        """
        Store a transcript document.

        Args:
            title: Document title
            content: Markdown document
            metadata: Document metadata

        Returns:
            Opaque document id
        """


class HttpKnowledgeSink(KnowledgeSink):
    """POST documents to an HTTP ingestion endpoint."""

    def __init__(self, url: str, token: Optional[str] = None, timeout: float = 60):
        """
        Initialize the sink.

        Args:
            url: Ingestion endpoint accepting {"title", "content", "metadata"} as JSON
            token: Bearer token sent with each request
            timeout: Request timeout in seconds
        """
        self.url = url
        self.timeout = timeout
        self.session = requests.Session()
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def store(self, title: str, content: str, metadata: Dict[str, Any]) -> str:
        try:
            response = self.session.post(
                self.url,
                json={"title": title, "content": content, "metadata": metadata},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except RequestException as e:
            raise RequestException(f"Knowledge store rejected document: {e}")
        except ValueError as e:
            raise ValueError(f"Knowledge store returned invalid JSON: {e}")

        document_id = data.get("id") or data.get("document_id")
        if not document_id:
            raise ValueError("Knowledge store response has no document id")

        logger.info(f"Stored document {document_id} at {self.url}")
        return str(document_id)


class LocalDirectorySink(KnowledgeSink):
    """Write documents to a local directory (one .md and one .json file per document)."""

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def store(self, title: str, content: str, metadata: Dict[str, Any]) -> str:
        document_id = str(uuid.uuid4())
        (self.directory / f"{document_id}.md").write_text(content, encoding="utf-8")
        with open(self.directory / f"{document_id}.json", "w", encoding="utf-8") as f:
            json.dump({"id": document_id, "title": title, "metadata": metadata}, f, ensure_ascii=False, indent=2)

        logger.info(f"Stored document {document_id} in {self.directory}")
        return document_id
