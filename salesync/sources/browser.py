from __future__ import annotations

from pathlib import Path
from typing import Any, Dict

from playwright.async_api import Browser

from salesync.config import get_config
from salesync.common.json_logger import JsonLogger, log_event

BROWSER_ARGS = ["--no-sandbox", "--disable-setuid-sandbox"]


async def launch_browser(*, playwright: Any, logger: JsonLogger) -> Browser:
    config = get_config()
    executable = config.browser_executable or None
    headless = config.etl_headless
    launch_kwargs: Dict[str, Any] = {"headless": headless, "args": list(BROWSER_ARGS)}

    if executable:
        if Path(executable).is_file():
            launch_kwargs["executable_path"] = executable
            log_event(
                logger=logger,
                phase="init",
                message="Launching Playwright with local browser executable",
                executable_path=executable,
                headless=headless,
            )
        else:
            log_event(
                logger=logger,
                phase="init",
                status="warn",
                message="Configured browser executable missing; falling back to bundled Chromium",
                executable_path=executable,
                headless=headless,
            )
    else:
        log_event(
            logger=logger,
            phase="init",
            message="Launching Playwright with bundled Chromium",
            headless=headless,
        )

    try:
        return await playwright.chromium.launch(**launch_kwargs)
    except Exception as exc:
        if launch_kwargs.pop("executable_path", None) is not None:
            log_event(
                logger=logger,
                phase="init",
                status="warn",
                message="Local browser launch failed; retrying with bundled Chromium",
                executable_path=executable,
                headless=headless,
                error=str(exc),
            )
            return await playwright.chromium.launch(**launch_kwargs)
        raise
