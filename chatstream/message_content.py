"""User message flattening, file context and link enrichment."""

import asyncio
import re
from dataclasses import dataclass
from typing import Any
from urllib.parse import urljoin

from bs4 import BeautifulSoup
import httpx

from chatstream.config import EnrichmentConfig, get_config
from chatstream.logging import get_logger
from chatstream.models import MessageFile, UserMessageContent

log = get_logger(__name__)

FILE_CONTENT_LIMIT = 8000
TRUNCATED_SUFFIX = "…(truncated)"

_URL_RE = re.compile(r"https?://[^\s<>\"'`)\]]+")


def format_user_message_content(content: UserMessageContent) -> str:
    """Flatten rich user input into plain prompt text."""
    if not content.content:
        return content.text
    parts: list[str] = []
    for segment in content.content:
        if segment.type == "mention":
            if segment.category == "prompts":
                parts.append(segment.content)
            else:
                parts.append(f"@{segment.content}")
        elif segment.type == "code":
            parts.append(f"`{segment.content}`")
        else:
            parts.append(segment.content)
    return "".join(parts)


def get_file_context(files: list[MessageFile]) -> str:
    """Render attached (non-image) files as a ``<files>`` prompt block."""
    documents = [item for item in files if not item.is_image]
    if not documents:
        return ""
    rendered = []
    for item in documents:
        body = item.content
        if len(body) > FILE_CONTENT_LIMIT:
            body = body[:FILE_CONTENT_LIMIT] + TRUNCATED_SUFFIX
        rendered.append(
            "<file>\n"
            f"<name>{item.name}</name>\n"
            f"<mimeType>{item.mime_type}</mimeType>\n"
            f"<path>{item.path}</path>\n"
            f"<content>{body}</content>\n"
            "</file>"
        )
    return "<files>\n" + "\n".join(rendered) + "\n</files>"


def extract_urls(text: str) -> list[str]:
    """Unique http(s) URLs in order of appearance."""
    seen: list[str] = []
    for match in _URL_RE.findall(text or ""):
        url = match.rstrip(".,;:!?")
        if url not in seen:
            seen.append(url)
    return seen


@dataclass
class EnrichedLink:
    url: str
    title: str = ""
    content: str = ""
    error: str | None = None


def get_link_context(links: list[EnrichedLink]) -> str:
    usable = [link for link in links if link.content]
    if not usable:
        return ""
    rendered = [
        f'<link url="{link.url}">\n<title>{link.title}</title>\n<content>{link.content}</content>\n</link>'
        for link in usable
    ]
    return "<links>\n" + "\n".join(rendered) + "\n</links>"


def build_user_message_context(
    text: str,
    files: list[MessageFile] | None = None,
    links: list[EnrichedLink] | None = None,
) -> str:
    """User text followed by file and link context blocks."""
    sections = [text]
    file_context = get_file_context(files or [])
    if file_context:
        sections.append(file_context)
    link_context = get_link_context(links or [])
    if link_context:
        sections.append(link_context)
    return "\n\n".join(section for section in sections if section)


class ContentEnricher:
    """Fetch URLs mentioned by the user and extract readable text."""

    def __init__(
        self,
        config: EnrichmentConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config or get_config().enrichment
        self.client = httpx.AsyncClient(
            timeout=self.config.timeout,
            follow_redirects=True,
            headers={"User-Agent": "chatstream/0.1.0 (Link Enrichment)"},
            transport=transport,
        )

    async def enrich_urls(self, urls: list[str]) -> list[EnrichedLink]:
        if not self.config.enabled or not urls:
            return []
        targets = urls[: self.config.max_urls]
        return list(await asyncio.gather(*(self._fetch(url) for url in targets)))

    async def _fetch(self, url: str) -> EnrichedLink:
        try:
            log.info("Fetching URL", url=url)
            response = await self.client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            log.warning("Link enrichment failed", url=url, error=str(e))
            return EnrichedLink(url=url, error=f"HTTP error: {e}")

        title, text = self._extract_readable_text(response.text, base_url=url)
        if len(text) > self.config.max_chars:
            text = text[: self.config.max_chars] + TRUNCATED_SUFFIX
        return EnrichedLink(url=url, title=title, content=text)

    @staticmethod
    def _extract_readable_text(html: str, base_url: str | None = None) -> tuple[str, str]:
        """Extract title and human-readable text from raw HTML."""
        soup = BeautifulSoup(html, "html.parser")

        for tag in soup(["script", "style", "noscript", "template", "svg", "canvas"]):
            tag.decompose()

        for anchor in soup.find_all("a"):
            href = (anchor.get("href") or "").strip()
            label = anchor.get_text(" ", strip=True)
            if not href:
                continue
            absolute = urljoin(base_url, href) if base_url else href
            anchor.replace_with(f"{label} ({absolute})" if label else absolute)

        title = ""
        if soup.title and soup.title.string:
            title = soup.title.string.strip()

        lines: list[str] = []
        for line in soup.get_text(separator="\n").splitlines():
            cleaned = re.sub(r"\s+", " ", line).strip()
            if cleaned:
                lines.append(cleaned)
        return title, "\n".join(lines)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def image_parts(files: list[MessageFile]) -> list[dict[str, Any]]:
    """OpenAI-style ``image_url`` parts for image attachments."""
    parts = []
    for item in files:
        if not item.is_image or not item.content:
            continue
        url = item.content if item.content.startswith(("data:", "http://", "https://")) else (
            f"data:{item.mime_type};base64,{item.content}"
        )
        parts.append({"type": "image_url", "image_url": {"url": url, "detail": "auto"}})
    return parts
