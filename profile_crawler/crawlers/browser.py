"""
Playwright execution contexts for profile workers.

Playwright's sync API is bound to the thread that started it, so every worker
starts its own driver, browser and context from inside its thread and stops
them again when its chunk is done.
"""

import random
from typing import List, Optional

from playwright.sync_api import sync_playwright

from config import BrowserConfig
from profile_crawler.concurrent.models import ExecutionContext
from profile_crawler.crawlers.base import AuthSession, ExecutionContextFactory
from profile_crawler.utils.errors import CrawlerError
from profile_crawler.utils.logging import get_business_logger


DEFAULT_USER_AGENTS = [
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36',
    'Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36',
]

CHROMIUM_ARGS = [
    '--disable-blink-features=AutomationControlled',
    '--disable-dev-shm-usage',
    '--no-first-run',
    '--disable-default-apps',
]


class PlaywrightContextFactory(ExecutionContextFactory):
    """One Playwright browser per worker, logged in through the auth session."""

    def __init__(self, auth: AuthSession, browser_config: Optional[BrowserConfig] = None,
                 user_agents: Optional[List[str]] = None):
        """
        Args:
            auth: Applies the current session cookies to each new page
            browser_config: Browser type, headless flag, viewport and timeouts
            user_agents: Pool to pick from when no fixed user agent is configured
        """
        self.auth = auth
        self.browser_config = browser_config or BrowserConfig()
        self.user_agents = user_agents or DEFAULT_USER_AGENTS
        self.logger = get_business_logger("browser")

    def _launch(self, playwright):
        config = self.browser_config
        if config.browser_type == 'chromium':
            return playwright.chromium.launch(headless=config.headless, args=CHROMIUM_ARGS)
        elif config.browser_type == 'firefox':
            return playwright.firefox.launch(headless=config.headless)
        elif config.browser_type == 'webkit':
            return playwright.webkit.launch(headless=config.headless)
        raise CrawlerError(
            f"Unsupported browser type: {config.browser_type}",
            {"browser_type": config.browser_type}
        )

    def create(self, worker_id: str) -> ExecutionContext:
        """
        Start a browser and a logged-in page for ``worker_id``.

        Raises:
            CrawlerError: If any part of the browser cannot be started
        """
        config = self.browser_config
        context = ExecutionContext(worker_id=worker_id)

        try:
            playwright = sync_playwright().start()
            context.handles["playwright"] = playwright

            browser = self._launch(playwright)
            context.handles["browser"] = browser

            browser_context = browser.new_context(
                user_agent=config.user_agent or random.choice(self.user_agents),
                viewport={'width': config.viewport_width, 'height': config.viewport_height},
            )
            browser_context.set_default_timeout(config.page_timeout_ms)
            context.handles["context"] = browser_context

            context.page = browser_context.new_page()
            self.auth.apply_session_to(context.page)
        except Exception as e:
            self.close(context)
            if isinstance(e, CrawlerError):
                raise
            raise CrawlerError(
                f"Failed to create browser context for worker {worker_id}",
                {"error": str(e), "browser_type": config.browser_type}
            )

        self.logger.debug(f"Browser context ready for worker {worker_id}")
        return context

    def close(self, context: ExecutionContext) -> None:
        """Close page, context and browser and stop the driver, innermost first."""
        for name in ("page", "context", "browser"):
            handle = context.page if name == "page" else context.handles.get(name)
            if handle is None:
                continue
            try:
                handle.close()
            except Exception as e:
                self.logger.warning(f"Error closing {name} of worker {context.worker_id}: {e}")

        playwright = context.handles.get("playwright")
        if playwright is not None:
            try:
                playwright.stop()
            except Exception as e:
                self.logger.warning(f"Error stopping Playwright for worker {context.worker_id}: {e}")

        context.page = None
        context.handles.clear()
        self.logger.debug(f"Browser context closed for worker {context.worker_id}")
