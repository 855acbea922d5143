"""Render an email to a PNG snapshot with headless Chromium.

The page layout is built by :func:`build_email_html`, which escapes
every header field.  The HTML body is embedded as-is; plain text is
escaped and split into paragraphs.
"""

from __future__ import annotations

import asyncio
import html
from string import Template

import structlog
from playwright.async_api import Browser, Playwright, async_playwright

from .config import RendererConfig
from .models import StructuredMessage

logger = structlog.get_logger()

BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--disable-gpu",
]

_PAGE_TEMPLATE = Template(
    """<!DOCTYPE html>
<html>
<head>
<meta charset="UTF-8">
<style>
  * { margin: 0; padding: 0; box-sizing: border-box; }
  body {
    font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, 'Helvetica Neue', Arial, sans-serif;
    background: #ffffff;
    padding: 30px;
    color: #333;
  }
  .email-container {
    max-width: 800px;
    margin: 0 auto;
    background: white;
    border: 1px solid #e0e0e0;
    border-radius: 8px;
    overflow: hidden;
  }
  .email-header { background: #f5f5f5; border-bottom: 1px solid #e0e0e0; padding: 20px 25px; }
  .email-subject { font-size: 24px; font-weight: 600; color: #1a1a1a; margin-bottom: 15px; word-wrap: break-word; }
  .email-meta { font-size: 14px; color: #666; line-height: 1.6; }
  .email-meta-row { margin-bottom: 6px; }
  .email-meta-label { font-weight: 600; color: #444; display: inline-block; min-width: 60px; }
  .email-body {
    padding: 25px;
    font-size: 15px;
    line-height: 1.6;
    color: #333;
    word-wrap: break-word;
    overflow-wrap: break-word;
  }
  .email-body img { max-width: 100%; height: auto; border-radius: 4px; margin: 10px 0; }
  .email-body a { color: #0066cc; text-decoration: none; }
  .email-body p { margin-bottom: 12px; }
  .email-body pre {
    background: #f5f5f5;
    padding: 12px;
    border-radius: 4px;
    overflow-x: auto;
    font-family: 'Courier New', monospace;
    font-size: 13px;
  }
</style>
</head>
<body>
  <div class="email-container">
    <div class="email-header">
      <div class="email-subject">$subject</div>
      <div class="email-meta">
        <div class="email-meta-row"><span class="email-meta-label">From:</span><span>$sender</span></div>
        <div class="email-meta-row"><span class="email-meta-label">To:</span><span>$recipients</span></div>
        <div class="email-meta-row"><span class="email-meta-label">Date:</span><span>$date</span></div>
      </div>
    </div>
    <div class="email-body">
$body
    </div>
  </div>
</body>
</html>
"""
)


def text_to_html(text: str) -> str:
    """Escape plain text and turn blank-line separated blocks into paragraphs."""
    if not text:
        return ""
    normalized = text.replace("\r\n", "\n")
    paragraphs = [block for block in normalized.split("\n\n") if block.strip()]
    return "".join(
        "<p>" + html.escape(block).replace("\n", "<br>") + "</p>" for block in paragraphs
    )


def build_email_html(message: StructuredMessage) -> str:
    """Return the full HTML document rendered for *message*."""
    body = message.html or text_to_html(message.text)
    date = message.date.strftime("%a, %d %b %Y %H:%M:%S %z").strip() if message.date else "Unknown"
    return _PAGE_TEMPLATE.substitute(
        subject=html.escape(message.subject),
        sender=html.escape(message.sender),
        recipients=html.escape(message.recipients),
        date=html.escape(date),
        body=body,
    )


class EmailRenderer:
    """Owns one headless Chromium instance, launched lazily on first render."""

    def __init__(self, config: RendererConfig) -> None:
        self._config = config
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        async with self._lock:
            if self._browser is not None:
                return
            logger.info("renderer_browser_launching")
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=True,
                args=BROWSER_ARGS,
            )
            logger.info("renderer_browser_ready")

    async def render(self, message: StructuredMessage) -> bytes:
        """Return a full-page PNG of *message*.

        Raises whatever Playwright raises (timeouts, crashed pages); the
        caller decides to publish without a snapshot.
        """
        if self._browser is None:
            await self.initialize()
        assert self._browser is not None

        page = await self._browser.new_page(
            viewport={
                "width": self._config.viewport_width,
                "height": self._config.viewport_height,
            },
            device_scale_factor=self._config.device_scale_factor,
        )
        try:
            await page.set_content(
                build_email_html(message),
                wait_until="domcontentloaded",
                timeout=self._config.timeout_ms,
            )
            await page.wait_for_timeout(self._config.settle_ms)
            screenshot = await page.screenshot(type="png", full_page=True)
            logger.debug(
                "email_rendered",
                message_id=message.message_id,
                size=len(screenshot),
            )
            return screenshot
        finally:
            await page.close()

    async def close(self) -> None:
        if self._browser is not None:
            logger.info("renderer_browser_closing")
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
