"""
Automation surface: the narrow capability interface the interaction
protocol drives, plus Playwright setup and session persistence.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

from playwright.async_api import BrowserContext, Playwright, async_playwright

from shared.config import SurfaceConfig
from shared.logging import get_logger

log = get_logger("browser", "base")


async def get_browser_context(
    config: SurfaceConfig,
    playwright_instance: Optional[Playwright] = None,
) -> tuple[BrowserContext, Playwright]:
    """
    Launch a persistent Chromium context so the logged-in session survives
    restarts.

    If playwright_instance is provided, uses that instead of creating a new one.
    """
    storage_dir = config.browser_data_dir
    storage_dir.mkdir(parents=True, exist_ok=True)

    if playwright_instance is None:
        playwright_instance = await async_playwright().start()

    context = await playwright_instance.chromium.launch_persistent_context(
        user_data_dir=str(storage_dir),
        headless=config.headless,
        slow_mo=config.slow_mo,
        args=[
            "--disable-blink-features=AutomationControlled",
            "--no-sandbox",
        ],
        viewport={"width": 1280, "height": 800},
    )
    log.info("browser.context.launched", data_dir=str(storage_dir), headless=config.headless)
    return context, playwright_instance


async def authenticate(config: SurfaceConfig) -> None:
    """
    Open the persistent profile for manual login.

    The session is saved when the operator closes the browser window.
    """
    print(f"Opening {config.url}")
    print(f"Browser data will be saved to: {config.browser_data_dir}")
    print()
    print("Instructions:")
    print("  1. Log in with your account")
    print("  2. Make sure you can see the chat interface")
    print("  3. CLOSE THE BROWSER WINDOW (not just the tab)")
    print()

    playwright = await async_playwright().start()
    try:
        context, _ = await get_browser_context(config, playwright)
        page = context.pages[0] if context.pages else await context.new_page()
        await page.goto(config.url)

        print("Waiting for you to close the browser...")
        await context.wait_for_event("close", timeout=0)
        print("Session saved!")
    finally:
        await playwright.stop()


class AutomationSurface(ABC):
    """
    What the interaction protocol needs from the external chat UI.

    Everything is async and coarse-grained; selectors and markup stay
    behind this interface.
    """

    name: str = "surface"

    async def connect(self) -> None:
        """Open the surface. Default: nothing to do."""

    async def disconnect(self) -> None:
        """Close the surface. Default: nothing to do."""

    @property
    def handle(self) -> Optional[str]:
        """Opaque reference reported to the control process (e.g. page URL)."""
        return None

    async def is_ready(self) -> bool:
        return await self.find_input()

    @abstractmethod
    async def find_input(self) -> bool:
        """Locate and focus the input affordance. False if absent."""

    @abstractmethod
    async def clear_input(self) -> None:
        """Remove any residual text from the input."""

    @abstractmethod
    async def type_chunk(self, text: str) -> None:
        """Insert text at the cursor."""

    @abstractmethod
    async def press_submit(self) -> None:
        """Primary submit action (Enter)."""

    @abstractmethod
    async def click_submit(self) -> bool:
        """Click the send control. False if it is absent or disabled."""

    @abstractmethod
    async def nudge_input(self) -> None:
        """Insert a space so the UI re-evaluates the input."""

    @abstractmethod
    async def output_count(self) -> int:
        """Number of output units currently on the page."""

    @abstractmethod
    async def is_busy(self) -> bool:
        """Whether a generation/busy indicator is visible."""

    @abstractmethod
    async def latest_output_text(self) -> str:
        """Text of the newest output unit ("" if none)."""

    async def latest_output_length(self) -> int:
        return len(await self.latest_output_text())

    async def pause(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
