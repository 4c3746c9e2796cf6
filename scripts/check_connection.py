#!/usr/bin/env python3
"""
Probe the connection status endpoint and print the normalized state.

Usage:
    python scripts/check_connection.py <base_url> <account_id>
"""

import asyncio
import sys

import httpx

from app.services.connection_status import resolve


async def main(base_url: str, account_id: str) -> int:
    async with httpx.AsyncClient(base_url=base_url, timeout=15.0) as client:
        try:
            response = await client.get("/api/google/connection", headers={"X-Account-Id": account_id})
        except httpx.HTTPError as e:
            print(f"Probe failed: {e}")
            return 2

    try:
        payload = response.json()
    except ValueError:
        payload = None

    state = resolve(response.status_code, payload)
    print(f"HTTP {response.status_code}")
    print(f"  status: {state.status}")
    print(f"  reason: {state.reason}")
    if state.last_error:
        print(f"  last error: {state.last_error}")

    return 0 if state.status == "connected" else 1


if __name__ == "__main__":
    if len(sys.argv) != 3:
        print(__doc__)
        sys.exit(2)
    sys.exit(asyncio.run(main(sys.argv[1], sys.argv[2])))
