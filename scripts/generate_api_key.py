"""
Generate an API key

Usage:
    python scripts/generate_api_key.py

Prints a new key (give it to the client) and its SHA-256 digest (append it
to API_KEY_HASHES). The key itself is never stored.
"""
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from eventlens.core.security import generate_api_key


def main():
    api_key, digest = generate_api_key()
    print(f"API key:  {api_key}")
    print(f"SHA-256:  {digest}")
    print("\nAdd the digest to API_KEY_HASHES (comma separated).")


if __name__ == "__main__":
    main()
