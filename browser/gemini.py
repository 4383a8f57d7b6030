"""
Gemini automation surface.

Playwright implementation of AutomationSurface for the Gemini web UI.
Selectors come from the surface section of config.yaml.
"""

import asyncio
from typing import Optional

from playwright.async_api import BrowserContext, Page, Playwright
from playwright.async_api import Error as PlaywrightError

from shared.config import SurfaceConfig
from shared.errors import SurfaceUnavailable
from shared.logging import get_logger

from .base import AutomationSurface, get_browser_context

log = get_logger("browser", "gemini")

# Tried when the configured input selector finds nothing
FALLBACK_INPUT_SELECTORS = [
    "rich-textarea div[contenteditable='true']",
    "div[contenteditable='true'][aria-label*='prompt']",
    "div[contenteditable='true']",
    "textarea",
]


class GeminiSurface(AutomationSurface):
    """Interface for Gemini web UI automation."""

    name = "gemini"

    def __init__(self, config: SurfaceConfig):
        self.config = config
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None
        self.playwright: Optional[Playwright] = None

    async def connect(self) -> None:
        """Launch the persistent profile and open the chat page."""
        try:
            self.context, self.playwright = await get_browser_context(self.config)
            self.page = self.context.pages[0] if self.context.pages else await self.context.new_page()
            await self.page.goto(self.config.url)
            await asyncio.sleep(3)  # Let page settle
        except PlaywrightError as e:
            raise SurfaceUnavailable(f"Could not open {self.config.url}: {e}") from e

        log.info("browser.gemini.connected", url=self.page.url)
        if not await self.find_input():
            log.warning("browser.gemini.input_missing", url=self.page.url,
                        hint="run 'python extractor.py auth' and log in")

    async def disconnect(self) -> None:
        if self.context:
            await self.context.close()
        if self.playwright:
            await self.playwright.stop()
        self.context = self.page = self.playwright = None
        log.info("browser.gemini.disconnected")

    @property
    def handle(self) -> Optional[str]:
        return self.page.url if self.page else None

    async def _visible(self, selector: str):
        element = await self.page.query_selector(selector)
        if element and await element.is_visible():
            return element
        return None

    async def find_input(self) -> bool:
        if self.page is None:
            return False
        for selector in [self.config.input_selector, *FALLBACK_INPUT_SELECTORS]:
            element = await self._visible(selector)
            if element:
                await element.click()
                return True
        return False

    async def clear_input(self) -> None:
        await self.page.keyboard.press("Control+a")
        await self.page.keyboard.press("Delete")

    async def type_chunk(self, text: str) -> None:
        await self.page.keyboard.insert_text(text)

    async def press_submit(self) -> None:
        await self.page.keyboard.press("Enter")

    async def click_submit(self) -> bool:
        button = await self._visible(self.config.send_button_selector)
        if button is None or await button.is_disabled():
            return False
        if await button.get_attribute("aria-disabled") == "true":
            return False
        await button.click()
        return True

    async def nudge_input(self) -> None:
        await self.page.keyboard.insert_text(" ")

    async def output_count(self) -> int:
        return len(await self.page.query_selector_all(self.config.output_selector))

    async def is_busy(self) -> bool:
        for selector in self.config.busy_selectors:
            if await self._visible(selector):
                return True
        return False

    async def latest_output_text(self) -> str:
        outputs = await self.page.query_selector_all(self.config.output_selector)
        if not outputs:
            return ""
        return (await outputs[-1].inner_text()) or ""
