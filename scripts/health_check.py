#!/usr/bin/env python3
"""Health check script to verify Money Lover API connectivity.

Run with: uv run scripts/health_check.py

Requires EMAIL and PASSWORD (or MONEYLOVER_TOKEN), either exported or in a
.env file at the repository root.
"""

import asyncio
import sys
from pathlib import Path

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from credentials import DirectToken, EnvSettings, resolve_credentials
from token_manager import TokenManager


async def health_check() -> bool:
    """Test authentication and a couple of read-only API calls."""
    settings = EnvSettings()
    credential = resolve_credentials(settings)

    if credential is None:
        print("❌ EMAIL and PASSWORD (or MONEYLOVER_TOKEN) environment variables required")
        print("   Set them in .env file or export them")
        return False

    print("Testing Money Lover API connectivity...")
    if isinstance(credential, DirectToken):
        print("  Using MONEYLOVER_TOKEN")
    else:
        print(f"  Email: {credential.email}")

    manager = TokenManager(settings=settings)

    # Test 1: Token
    print("\n1. Testing authentication...")
    try:
        token = await manager.get_usable_token()
        if not token:
            print("   ❌ No token obtained")
            return False
        print("   ✅ Token available")
    except Exception as e:
        print(f"   ❌ Login failed: {type(e).__name__}: {e}")
        return False

    # Test 2: User info
    print("\n2. Testing get_user_info API...")
    try:
        info = await manager.run_with_client(None, lambda client: client.get_user_info())
        email = info.get("email") if isinstance(info, dict) else None
        print(f"   ✅ Got user info{f' for {email}' if email else ''}")
    except Exception as e:
        print(f"   ❌ Get user info failed: {type(e).__name__}: {e}")
        return False

    # Test 3: Wallets
    print("\n3. Testing get_wallets API...")
    try:
        wallets = await manager.run_with_client(None, lambda client: client.get_wallets())
        count = len(wallets) if isinstance(wallets, list) else 0
        print(f"   ✅ Got {count} wallets")
    except Exception as e:
        print(f"   ❌ Get wallets failed: {type(e).__name__}: {e}")
        return False

    print("\n" + "=" * 50)
    print("✅ All health checks passed! API is working.")
    print("=" * 50)
    return True


def main() -> int:
    """Run health check and return exit code."""
    success = asyncio.run(health_check())
    return 0 if success else 1


if __name__ == "__main__":
    sys.exit(main())
