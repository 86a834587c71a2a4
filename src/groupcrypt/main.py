"""
groupcrypt - Command line tool for local identity management.
"""

import argparse
import asyncio
import getpass
import sys
from pathlib import Path
from typing import Optional

from . import __version__
from .config import Config
from .constants import CONFIG_FILENAME, KEYS_DIRNAME
from .errors import GroupCryptError
from .identity import IdentityKeyStore
from .storage import FileKeyStorage
from .utils import format_fingerprint, normalize_user_id, setup_logging


def _passphrase(config: Config, confirm: bool = False) -> Optional[str]:
    if not config.passphrase_protected:
        return None
    passphrase = getpass.getpass("Identity passphrase: ")
    if confirm and getpass.getpass("Confirm passphrase: ") != passphrase:
        print("Passphrases do not match.", file=sys.stderr)
        sys.exit(2)
    return passphrase


async def _init(store: IdentityKeyStore, user_id: str) -> None:
    if await store.load(user_id):
        print(f"Identity already exists for {user_id}.")
    else:
        store.generate()
        await store.persist(user_id)
        print(f"Created identity for {user_id}.")
    print(f"Fingerprint: {format_fingerprint(store.fingerprint())}")


async def _show(store: IdentityKeyStore, user_id: str) -> int:
    if not await store.load(user_id):
        print(f"No identity stored for {user_id}.", file=sys.stderr)
        return 1
    print(f"User:        {user_id}")
    print(f"Public key:  {store.export_public_key_b64()}")
    print(f"Fingerprint: {format_fingerprint(store.fingerprint())}")
    return 0


async def _delete(store: IdentityKeyStore, user_id: str) -> int:
    if await store.delete(user_id):
        print(f"Deleted identity for {user_id}.")
        return 0
    print(f"No identity stored for {user_id}.", file=sys.stderr)
    return 1


def main(argv=None) -> int:
    """Main entry point for the groupcrypt command."""
    parser = argparse.ArgumentParser(
        description="groupcrypt - end-to-end encryption identity management",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  groupcrypt init --user-id 42             # Create (or load) the identity for user 42
  groupcrypt show --user-id 42             # Print public key and fingerprint
  groupcrypt --data-dir /tmp/gc delete --user-id 42
        """,
    )

    parser.add_argument("--version", action="version", version=f"groupcrypt {__version__}")
    parser.add_argument(
        "--data-dir",
        type=str,
        default=None,
        help="Data directory for identity keys, configuration and logs",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)
    for name, help_text in (
        ("init", "Create the identity keypair if none is stored"),
        ("show", "Show the stored public key and fingerprint"),
        ("delete", "Delete the stored identity keypair"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--user-id", required=True, help="User id the identity belongs to")

    args = parser.parse_args(argv)

    if args.data_dir:
        data_dir = Path(args.data_dir).expanduser().resolve()
        config = Config(data_dir / CONFIG_FILENAME)
        config.set("storage", "data_dir", str(data_dir))
    else:
        config = Config()
        data_dir = config.data_dir

    setup_logging(config, data_dir, debug=args.debug)

    try:
        user_id = normalize_user_id(args.user_id)
        store = IdentityKeyStore(
            FileKeyStorage(data_dir / KEYS_DIRNAME),
            passphrase=_passphrase(config, confirm=args.command == "init"),
        )
        if args.command == "init":
            asyncio.run(_init(store, user_id))
            return 0
        if args.command == "show":
            return asyncio.run(_show(store, user_id))
        return asyncio.run(_delete(store, user_id))
    except GroupCryptError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
