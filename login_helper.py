#!/usr/bin/env python3
"""
WhatsApp Web login helper.

Opens WhatsApp Web in the debug Chrome profile, restores the saved session
when there is one and otherwise prints the pairing QR code in the terminal.
Once the phone is linked the session token is saved for the MCP server.
"""

import argparse
import asyncio
import sys

from src.config import SESSION_NAME
from src.services.login_service import LoginService
from src.utils.browser_guard import BrowserGuard
from src.utils.logger import configure_logging, logger


async def run(session_name: str, max_wait: float, check_interval: float, headless: bool) -> int:
    service = LoginService(
        browser_guard=BrowserGuard(headless=headless),
        session_name=session_name,
    )
    loop = asyncio.get_running_loop()
    deadline = loop.time() + max_wait
    last_code = None

    try:
        while loop.time() < deadline:
            response = await service.ensure_login_status(wait_timeout=check_interval * 4)
            status = response.status

            if response.success:
                print()
                print("Connected to WhatsApp Web.")
                if status.token_file:
                    print(f"Session token saved to {status.token_file}")
                return 0

            if status.state == "browser_offline":
                print(f"Browser unavailable: {status.message}")
                return 1

            if status.state == "needs_qr_scan" and status.qr_code and status.qr_code != last_code:
                last_code = status.qr_code
                print()
                print("Scan this code with WhatsApp > Linked devices > Link a device:")
                print(status.qr_ascii or "")
            elif status.state == "pairing":
                print("Phone linked, syncing...")

            await asyncio.sleep(check_interval)
    finally:
        await service.close()

    print("Timed out waiting for the phone, run the helper again.")
    return 1


def main() -> None:
    parser = argparse.ArgumentParser(description="Pair WhatsApp Web and save the session token.")
    parser.add_argument("--session", default=SESSION_NAME, help="session name used for the token file")
    parser.add_argument("--max-wait", type=float, default=300.0, help="seconds to wait for pairing")
    parser.add_argument("--interval", type=float, default=3.0, help="seconds between status checks")
    parser.add_argument("--show-browser", action="store_true", help="run Chrome with a visible window")
    args = parser.parse_args()

    configure_logging(level="WARNING")
    logger.debug("login helper started for session {}", args.session)
    sys.exit(asyncio.run(run(args.session, args.max_wait, args.interval, headless=not args.show_browser)))


if __name__ == "__main__":
    main()
