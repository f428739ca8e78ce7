"""
GroupGuard
==========

Runs the AutoMod engine for VRChat groups: the Gatekeeper, Instance Guard and
Permission Guard loops plus an interactive console.

The raw VRChat API client is supplied by the host through a factory named in
``api_client_factory`` (``"package.module:callable"``) or the
``GROUPGUARD_CLIENT_FACTORY`` environment variable.
"""

import asyncio
import importlib
import inspect
import os
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from groupguard.configuration.app_configuration import CONFIG_PATH, AppConfig
from groupguard.network.moderation_api import VRChatClient
from groupguard.ui.console import ConsoleControl, console_session
from groupguard.util.logger import get_logger, handle_exception

logger = get_logger("main")


def resolve_base_dir() -> Path:
    """Determine the base directory of the project.

    Resolution order:
    1. GROUPGUARD_HOME environment variable, if set.
    2. If running in a frozen/compiled context, use the executable's directory.
    3. Otherwise, assume running from source and use the project root.
    """
    if env_home := os.getenv("GROUPGUARD_HOME"):
        return Path(env_home).resolve()

    if getattr(sys, "frozen", False) or getattr(sys, "compiled", False):
        return Path(sys.argv[0]).resolve().parent

    return Path(__file__).resolve().parents[2]


def load_environment(base_dir: Path) -> AppConfig:
    """Load ``.env`` and the YAML application configuration."""
    load_dotenv(dotenv_path=base_dir / ".env")
    config_path = Path(os.getenv("GROUPGUARD_CONFIG") or CONFIG_PATH).resolve()
    return AppConfig(config_path)


def load_client_factory(path: str):
    """Import ``"module:callable"`` and return the callable.

    Raises
    ------
    ValueError
        If ``path`` is empty or not in ``module:callable`` form.
    """
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Client factory must look like 'module:callable', got {path!r}")
    module = importlib.import_module(module_name)
    return getattr(module, attr)


async def create_client(config: AppConfig) -> VRChatClient:
    factory_path = os.getenv("GROUPGUARD_CLIENT_FACTORY") or config.api_client_factory
    factory = load_client_factory(factory_path)
    client: Any = factory()
    if inspect.isawaitable(client):
        client = await client
    return client


async def async_main(base_dir: Path) -> int:
    """Bootstrap the context and console, returning an exit code."""
    from groupguard.context import AutoModContext

    config = load_environment(base_dir)

    try:
        client = await create_client(config)
    except Exception as exc:
        logger.critical("Failed to create the VRChat API client: %s", exc)
        return 1

    context = AutoModContext.build(config, client)
    control = ConsoleControl(context)
    try:
        await context.start()
        async with console_session(control):
            await control.shutdown_event.wait()
    except asyncio.CancelledError:
        logger.info("Runtime cancelled; proceeding to shutdown")
    finally:
        await context.shutdown()

    return 0


def main() -> int:
    """Entrypoint that runs the async runtime and returns the process code."""
    base_dir = resolve_base_dir()
    os.chdir(base_dir)
    logger.info("Starting GroupGuard…")
    try:
        return asyncio.run(async_main(base_dir))
    except KeyboardInterrupt:
        logger.info("Shutdown requested by user.")
        return 0
    except Exception as exc:
        logger.critical("An unexpected error occurred: %s", exc)
        return 1


if __name__ == "__main__":
    sys.excepthook = handle_exception
    sys.exit(main())
