import httpx
import pytest

from chatstream.config import EnrichmentConfig
from chatstream.message_content import (
    FILE_CONTENT_LIMIT,
    TRUNCATED_SUFFIX,
    ContentEnricher,
    build_user_message_context,
    extract_urls,
    format_user_message_content,
    get_file_context,
    image_parts,
)
from chatstream.models import ContentSegment, MessageFile, UserMessageContent

PAGE = """
<html>
  <head><title> Release notes </title><style>body { color: red; }</style></head>
  <body>
    <script>window.track()</script>
    <h1>Version 2</h1>
    <p>Faster   streaming.</p>
    <a href="/changelog">Full changelog</a>
  </body>
</html>
"""


def test_plain_text_is_used_without_segments():
    assert format_user_message_content(UserMessageContent(text="hello")) == "hello"


def test_segments_render_mentions_and_code():
    content = UserMessageContent(
        text="ignored",
        content=[
            ContentSegment(type="text", content="Ask "),
            ContentSegment(type="mention", content="files", category="servers"),
            ContentSegment(type="text", content=" about "),
            ContentSegment(type="code", content="main.py"),
            ContentSegment(type="mention", content=" and be brief", category="prompts"),
        ],
    )

    assert format_user_message_content(content) == "Ask @files about `main.py` and be brief"


def test_file_context_skips_images_and_truncates():
    files = [
        MessageFile(name="big.txt", content="a" * (FILE_CONTENT_LIMIT + 10), path="/tmp/big.txt"),
        MessageFile(name="cat.png", content="QUJD", mime_type="image/png"),
    ]

    context = get_file_context(files)

    assert context.startswith("<files>\n<file>\n<name>big.txt</name>")
    assert "<path>/tmp/big.txt</path>" in context
    assert TRUNCATED_SUFFIX + "</content>" in context
    assert "cat.png" not in context
    assert get_file_context([files[1]]) == ""


def test_user_context_joins_sections():
    context = build_user_message_context("question", [MessageFile(name="a.md", content="x")])

    assert context.startswith("question\n\n<files>")
    assert build_user_message_context("question") == "question"


def test_extract_urls_dedupes_and_trims_punctuation():
    text = "See https://a.example/x, then http://b.example. Again https://a.example/x!"

    assert extract_urls(text) == ["https://a.example/x", "http://b.example"]
    assert extract_urls("") == []


def test_image_parts_accept_data_urls_and_base64():
    files = [
        MessageFile(name="a.png", content="QUJD", mime_type="image/png"),
        MessageFile(name="b.jpg", content="data:image/jpeg;base64,Zm9v", mime_type="image/jpeg"),
        MessageFile(name="empty.png", content="", mime_type="image/png"),
    ]

    urls = [part["image_url"]["url"] for part in image_parts(files)]

    assert urls == ["data:image/png;base64,QUJD", "data:image/jpeg;base64,Zm9v"]


@pytest.mark.asyncio
async def test_enricher_extracts_title_text_and_absolute_links():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "down.example":
            return httpx.Response(502, text="bad gateway")
        return httpx.Response(200, text=PAGE, headers={"content-type": "text/html"})

    enricher = ContentEnricher(EnrichmentConfig(max_urls=2), transport=httpx.MockTransport(handler))
    try:
        links = await enricher.enrich_urls(
            ["https://docs.example/notes", "https://down.example/", "https://ignored.example/"]
        )
    finally:
        await enricher.close()

    assert len(links) == 2
    page, failed = links
    assert page.title == "Release notes"
    assert "Faster streaming." in page.content
    assert "Full changelog (https://docs.example/changelog)" in page.content
    assert "window.track" not in page.content
    assert page.error is None
    assert failed.content == ""
    assert failed.error.startswith("HTTP error:")


@pytest.mark.asyncio
async def test_enricher_truncates_and_respects_disabled():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<p>" + "word " * 100 + "</p>")

    enricher = ContentEnricher(EnrichmentConfig(max_chars=20), transport=httpx.MockTransport(handler))
    disabled = ContentEnricher(EnrichmentConfig(enabled=False), transport=httpx.MockTransport(handler))
    try:
        [link] = await enricher.enrich_urls(["https://long.example/"])
        skipped = await disabled.enrich_urls(["https://long.example/"])
    finally:
        await enricher.close()
        await disabled.close()

    assert link.content == "word " * 4 + TRUNCATED_SUFFIX
    assert skipped == []
