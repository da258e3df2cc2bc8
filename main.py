import sys
import asyncio
import uuid
from pathlib import Path

from tabrunner.agent.orchestrator import Orchestrator
from tabrunner.core.logging import setup_logging
from tabrunner.fetching.tabs import PlaywrightTabHost
from tabrunner.tui.app import TabRunnerApp, parse_urls


async def run_headless(urls_file: str):
    orchestrator = Orchestrator(PlaywrightTabHost())
    await orchestrator.start()
    try:
        session_id = f"search-{uuid.uuid4().hex[:8]}"
        response = await orchestrator.handle_message(
            {
                "action": "startSearch",
                "sessionId": session_id,
                "urls": parse_urls(Path(urls_file).read_text()),
            }
        )
        if response.get("success"):
            await orchestrator.join(session_id)
    finally:
        await orchestrator.shutdown()


def main():
    if len(sys.argv) > 1:
        setup_logging(console=True)
        asyncio.run(run_headless(sys.argv[1]))
        return

    setup_logging()
    app = TabRunnerApp(Orchestrator(PlaywrightTabHost()))
    app.run()


if __name__ == "__main__":
    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
    main()
