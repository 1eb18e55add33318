"""CLI entry point for Stowage."""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

import uvicorn

from stowage.capacity import CapacityAccountant
from stowage.client.broker import BrokerClient
from stowage.client.orchestrator import UploadOrchestrator
from stowage.client.source import FileSource
from stowage.config import StowageConfig, load_config
from stowage.errors import StowageError
from stowage.logging_config import configure_logging
from stowage.registry import create_registry_store
from stowage.registry.resolver import BucketRegistry
from stowage.server import create_app
from stowage.vault import CredentialVault, generate_master_key

logger = logging.getLogger("stowage")

_DEFAULT_CONFIG = Path("stowage.yaml")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv: Argument list to parse. Defaults to sys.argv[1:].

    Returns:
        Parsed argument namespace.
    """
    parser = argparse.ArgumentParser(
        prog="stowage",
        description="Stowage - brokered direct-to-bucket uploads",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Serve subcommand
    serve_parser = subparsers.add_parser("serve", help="Run the upload broker")
    serve_parser.add_argument(
        "--config", type=Path, default=_DEFAULT_CONFIG,
        help="Path to YAML configuration file (default: stowage.yaml)",
    )
    serve_parser.add_argument(
        "--host", type=str, default=None,
        help="Host address to bind to (overrides config)",
    )
    serve_parser.add_argument(
        "--port", type=int, default=None,
        help="Port to listen on (overrides config)",
    )
    serve_parser.add_argument(
        "--log-level", type=str, default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (overrides config, default: INFO)",
    )
    serve_parser.add_argument(
        "--log-format", type=str, default=None, choices=["text", "json"],
        help="Log format: 'text' (human-readable) or 'json' (structured)",
    )
    serve_parser.add_argument(
        "--shutdown-timeout", type=int, default=None,
        help="Graceful shutdown timeout in seconds (default: 30)",
    )

    # Refresh-usage subcommand
    refresh_parser = subparsers.add_parser(
        "refresh-usage", help="Recompute bucket usage and print the snapshots"
    )
    refresh_parser.add_argument(
        "--config", type=Path, default=_DEFAULT_CONFIG,
        help="Path to YAML configuration file (default: stowage.yaml)",
    )
    refresh_parser.add_argument(
        "--bucket", type=int, action="append", default=None, dest="buckets",
        help="Bucket id to refresh (repeatable, default: all)",
    )

    # Upload subcommand
    upload_parser = subparsers.add_parser("upload", help="Upload a file through a broker")
    upload_parser.add_argument("path", type=Path, help="File to upload")
    upload_parser.add_argument("--broker", required=True, help="Broker base URL")
    upload_parser.add_argument("--bucket", type=int, required=True, help="Target bucket id")
    token_group = upload_parser.add_mutually_exclusive_group(required=True)
    token_group.add_argument("--token", help="Upload capability token")
    token_group.add_argument(
        "--admin-token", help="Admin bearer token used to mint a capability first"
    )
    upload_parser.add_argument(
        "--content-type", default=None,
        help="MIME type (default: guessed from the file name)",
    )
    upload_parser.add_argument(
        "--config", type=Path, default=None,
        help="YAML configuration supplying upload tuning (optional)",
    )

    # Encrypt-secret subcommand
    encrypt_parser = subparsers.add_parser(
        "encrypt-secret", help="Encrypt a secret with the configured master key"
    )
    encrypt_parser.add_argument(
        "--config", type=Path, default=_DEFAULT_CONFIG,
        help="Path to YAML configuration file (default: stowage.yaml)",
    )
    encrypt_parser.add_argument(
        "--value", default=None, help="Secret to encrypt (default: read stdin)"
    )

    # Generate-key subcommand
    subparsers.add_parser("generate-key", help="Print a fresh base64 master key")

    return parser.parse_args(argv)


def _load(path: Path) -> StowageConfig | None:
    try:
        return load_config(path)
    except FileNotFoundError:
        logger.error("Config file not found: %s", path)
    except Exception as exc:
        logger.error("Failed to load config: %s", exc)
    return None


def _serve(args: argparse.Namespace) -> int:
    config = _load(args.config)
    if config is None:
        return 1

    # Apply CLI overrides
    if args.host is not None:
        config.server.host = args.host
    if args.port is not None:
        config.server.port = args.port
    if args.log_level is not None:
        config.server.log_level = args.log_level
    if args.log_format is not None:
        config.server.log_format = args.log_format
    if args.shutdown_timeout is not None:
        config.server.shutdown_timeout = args.shutdown_timeout

    configure_logging(level=config.server.log_level, fmt=config.server.log_format)

    # Fail fast on bad key material before binding the port.
    try:
        CredentialVault.from_config(config.vault)
    except StowageError as exc:
        logger.error("Invalid vault configuration: %s", exc.message)
        return 1

    logger.info("Starting Stowage broker on %s:%d", config.server.host, config.server.port)
    app = create_app(config)
    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level.lower(),
        timeout_graceful_shutdown=config.server.shutdown_timeout,
        timeout_keep_alive=5,
    )
    return 0


async def _refresh_usage(config: StowageConfig, bucket_ids: list[int] | None) -> list[dict]:
    vault = CredentialVault.from_config(config.vault)
    store = create_registry_store(config.registry)
    await store.init_db()
    try:
        registry = BucketRegistry(store, vault)
        accountant = CapacityAccountant(
            registry, vault, default_capacity_gb=config.capacity.default_capacity_gb
        )
        if bucket_ids:
            snapshots = await accountant.refresh(bucket_ids)
        else:
            snapshots = await accountant.refresh_all()
    finally:
        await store.close()
    return [snapshot.to_dict() for snapshot in snapshots]


async def _upload(args: argparse.Namespace, config: StowageConfig) -> str:
    source = FileSource(args.path, content_type=args.content_type)

    def report(session) -> None:
        print(
            f"  {session.file_name}: {session.progress:.0%}",
            file=sys.stderr,
        )

    async with BrokerClient(
        args.broker, token=args.token or "", timeout=config.upload.request_timeout
    ) as broker:
        if args.admin_token:
            await broker.request_capability(args.bucket, args.admin_token)
        orchestrator = UploadOrchestrator.from_config(
            broker, args.bucket, config.upload, on_progress=report
        )
        session = await orchestrator.upload(source)
    return session.final_url


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the Stowage CLI.

    Args:
        argv: Argument list to parse. Defaults to sys.argv[1:].

    Returns:
        Process exit code.
    """
    args = parse_args(argv)

    # Basic stderr logger until configure_logging replaces it
    logging.basicConfig(level=logging.INFO, stream=sys.stderr)

    if args.command == "serve":
        return _serve(args)

    if args.command == "generate-key":
        print(generate_master_key())
        return 0

    if args.command == "encrypt-secret":
        config = _load(args.config)
        if config is None:
            return 1
        value = args.value if args.value is not None else sys.stdin.read().strip()
        if not value:
            print("Error: nothing to encrypt", file=sys.stderr)
            return 1
        try:
            vault = CredentialVault.from_config(config.vault)
        except StowageError as exc:
            print(f"Error: {exc.message}", file=sys.stderr)
            return 1
        print(vault.encrypt_secret(value))
        return 0

    if args.command == "refresh-usage":
        config = _load(args.config)
        if config is None:
            return 1
        try:
            snapshots = asyncio.run(_refresh_usage(config, args.buckets))
        except StowageError as exc:
            print(f"Error: {exc.message}", file=sys.stderr)
            return 1
        print(json.dumps(snapshots, indent=2))
        return 0 if all(s["status"] == "Success" for s in snapshots) else 2

    if args.command == "upload":
        config = StowageConfig()
        if args.config is not None:
            config = _load(args.config)
            if config is None:
                return 1
        if not args.path.is_file():
            print(f"Error: file not found: {args.path}", file=sys.stderr)
            return 1
        try:
            final_url = asyncio.run(_upload(args, config))
        except StowageError as exc:
            print(f"Error: {exc.message}", file=sys.stderr)
            return 1
        print(final_url)
        return 0

    return 1


def entry_point() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    entry_point()
