#!/usr/bin/env python3
"""CLI tool to save Gemini cookies for the MCP server.

Usage:
    gemini-web-mcp-auth --file cookies.txt
    gemini-web-mcp-auth --file cookies.txt --verify
    gemini-web-mcp-auth --show-tokens

The cookie header is copied from Chrome DevTools. Only the cookies the
session needs are kept; the access token is always fetched fresh at startup.
"""

import asyncio
import json
import sys
import time
from pathlib import Path

from .api_client import GeminiClient
from .auth import (
    ESSENTIAL_COOKIES,
    AuthTokens,
    FileRotationCache,
    get_cache_path,
    parse_cookie_header,
    save_tokens_to_cache,
    validate_cookies,
)
from .constants import IDENTITY_COOKIE, ROTATING_COOKIE
from .exceptions import GeminiError


def read_cookie_file(cookie_file: str) -> str:
    """Read a cookie header from a file, ignoring blank and # comment lines."""
    with open(cookie_file, "r") as f:
        lines = f.read().strip().split("\n")
    cookie_lines = [line.strip() for line in lines if line.strip() and not line.strip().startswith("#")]
    return " ".join(cookie_lines)


def filter_essential_cookies(cookies: dict[str, str]) -> dict[str, str]:
    return {k: v for k, v in cookies.items() if k in ESSENTIAL_COOKIES}


async def verify_cookies(cookies: dict[str, str]) -> None:
    """Fetch an access token once; raises on rejected cookies."""
    client = GeminiClient(cookies=cookies, rotation_cache=FileRotationCache())
    try:
        await client.init(auto_refresh=False)
    finally:
        await client.close()


def _prompt_for_file() -> str | None:
    print("Follow these steps to extract and save your cookies:")
    print()
    print("  1. Open Chrome and go to: https://gemini.google.com")
    print("  2. Make sure you're logged in")
    print("  3. Press F12 (or Cmd+Option+I on Mac) to open DevTools")
    print("  4. Click the 'Network' tab and reload the page")
    print("  5. Click on the first 'app' request in the list")
    print("  6. In 'Request Headers', find the line starting with 'cookie:'")
    print("  7. Right-click the cookie VALUE and select 'Copy value'")
    print("  8. Paste it into a text file (e.g. cookies.txt) and save")
    print()
    print("-" * 50)
    print()

    try:
        cookie_file = input("Enter the path to your cookie file: ").strip()
    except (EOFError, KeyboardInterrupt):
        print("\nCancelled.")
        return None

    if not cookie_file:
        print("ERROR: No file path provided.")
        return None
    return str(Path(cookie_file).expanduser())


def run_file_cookie_entry(cookie_file: str | None = None, verify: bool = False) -> AuthTokens | None:
    """Read cookies from a file and save them to the auth cache.

    Args:
        cookie_file: Path to the file. If not provided, shows instructions
                     and prompts for the path.
        verify: Fetch an access token before saving to check the cookies work.
    """
    print("Gemini Web MCP - Cookie File Import")
    print("=" * 50)
    print()

    if not cookie_file:
        cookie_file = _prompt_for_file()
        if not cookie_file:
            return None

    print(f"Reading cookies from: {cookie_file}")

    try:
        cookie_string = read_cookie_file(cookie_file)
    except FileNotFoundError:
        print(f"ERROR: File not found: {cookie_file}")
        return None
    except OSError as e:
        print(f"ERROR: Could not read file: {e}")
        return None

    all_cookies = parse_cookie_header(cookie_string)
    if not all_cookies:
        print("\nERROR: Could not parse any cookies from input.")
        print("Make sure you copied the cookie VALUE, not the header name.")
        print()
        print(f"Expected format: {IDENTITY_COOKIE}=xxx; {ROTATING_COOKIE}=xxx; ...")
        return None

    if not validate_cookies(all_cookies):
        print(f"\nERROR: Missing required cookie: {IDENTITY_COOKIE}")
        print(f"Found: {list(all_cookies.keys())}")
        return None

    cookies = filter_essential_cookies(all_cookies)
    if ROTATING_COOKIE not in cookies:
        print(f"WARNING: {ROTATING_COOKIE} not found. It will be fetched by cookie rotation.")

    if verify:
        print()
        print("Verifying cookies (fetching access token)...")
        try:
            asyncio.run(verify_cookies(cookies))
        except GeminiError as e:
            print(f"\nERROR: Verification failed: {e}")
            return None
        print("Cookies verified.")

    tokens = AuthTokens(cookies=cookies, extracted_at=time.time())
    save_tokens_to_cache(tokens)

    print()
    print("=" * 50)
    print("SUCCESS!")
    print("=" * 50)
    print()
    print(f"Cookies saved: {len(cookies)} essential cookies (filtered from {len(all_cookies)})")
    print(f"Cache location: {get_cache_path()}")
    print()
    print("NEXT STEPS:")
    print()
    print("  1. Add the MCP to your AI tool (if not already done):")
    print('       "gemini-web-mcp": { "command": "gemini-web-mcp" }')
    print()
    print("  2. Restart your AI assistant, or call the refresh_auth tool")
    print()

    return tokens


def show_tokens() -> int:
    cache_path = get_cache_path()
    if not cache_path.exists():
        print("No cached tokens found.")
        return 0
    with open(cache_path) as f:
        data = json.load(f)
    print(json.dumps(data, indent=2))
    return 0


def main():
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Save Gemini cookies for Gemini Web MCP",
        epilog="""
EXAMPLES:
  gemini-web-mcp-auth --file               # Guided file import
  gemini-web-mcp-auth --file ~/cookies.txt # Direct file import
  gemini-web-mcp-auth --file cookies.txt --verify

After authentication, start the MCP server with: gemini-web-mcp
        """
    )
    parser.add_argument(
        "--file",
        nargs="?",
        const="",  # When --file is used without argument, set to empty string
        metavar="PATH",
        help="Import cookies from file. Shows instructions if no path given."
    )
    parser.add_argument(
        "--verify",
        action="store_true",
        help="Fetch an access token before saving to check the cookies"
    )
    parser.add_argument(
        "--show-tokens",
        action="store_true",
        help="Show cached cookies (for debugging)"
    )

    args = parser.parse_args()

    if args.show_tokens:
        return show_tokens()

    try:
        tokens = run_file_cookie_entry(cookie_file=args.file or None, verify=args.verify)
        return 0 if tokens else 1
    except KeyboardInterrupt:
        print("\nCancelled.")
        return 1


if __name__ == "__main__":
    sys.exit(main())
