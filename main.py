#!/usr/bin/env python3
"""LoRaWAN End Device Bulk Import CLI.

This module provides a command-line interface for registering every end
device listed in a file (The Things Stack JSON export or CSV) in one
application of a LoRaWAN network stack.

Architecture:
    - Uses StackClient as the shared HTTP layer for all API calls
    - EndDeviceRegistry splits each device across the enabled components
    - ImportDevicesUseCase decodes, validates and submits the records

Environment Variables Required:
    - LWS_BASE_URL: Stack base URL (e.g. https://eu1.cloud.thethings.network)
    - LWS_API_KEY: API key with end device write rights
    - LWS_COMPONENTS: Enabled components (optional, default is,ns,as,js)

Example Usage:
    $ python main.py devices.json --application my-app
    $ python main.py devices.csv --application my-app --format the-things-stack-csv
    $ python main.py devices.json --application my-app --frequency-plan-id EU_863_870_TTN

Exit codes:
    0 - every end device was imported
    1 - some or all end devices failed, or a configuration error
    2 - the file could not be decoded
"""
import os
import sys
import asyncio
import argparse
import logging
from datetime import datetime
from dotenv import load_dotenv

load_dotenv()

# Local imports
from src.lwstack.api import (
    APIKeyCredentials,
    ConfigurationError,
    EndDeviceRegistry,
    FormatError,
    StackClient,
)
from src.lwstack.api.device_registry import NS
from src.lwstack.importer.adapters import StackRegistrationBackend, list_formats
from src.lwstack.importer.adapters.json_decoder import FORMAT_ID as DEFAULT_FORMAT_ID
from src.lwstack.importer.domain.entities import FallbackConfig, ResultClass, RunState
from src.lwstack.importer.use_cases import ImportDevicesUseCase, SubmitOptions, ValidationPolicy

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_FORMAT_ERROR = 2


def print_progress(snapshot):
    """Progress listener: one line per processed record."""
    print(snapshot.describe())


async def run_import(args: argparse.Namespace) -> int:
    """Main import orchestration function.

    Args:
        args: Parsed command-line arguments

    Returns:
        Process exit code
    """
    start_time = datetime.now()
    print(f"[Main] Starting at {start_time.isoformat()}")

    try:
        with open(args.file, "rb") as f:
            content = f.read()
    except OSError as e:
        print(f"[Main] Cannot read {args.file}: {e}")
        return EXIT_FAILED

    try:
        credentials = APIKeyCredentials()
        client = StackClient(credentials, request_timeout=args.timeout)
    except ConfigurationError as e:
        print(f"[Main] Configuration error: {e.message}")
        return EXIT_FAILED

    fallback = FallbackConfig(
        frequency_plan_id=args.frequency_plan_id,
        lorawan_version=args.lorawan_version,
        lorawan_phy_version=args.lorawan_phy_version,
    )

    async with client:
        try:
            registry = EndDeviceRegistry(client)
        except ConfigurationError as e:
            print(f"[Main] Configuration error: {e.message}")
            return EXIT_FAILED

        use_case = ImportDevicesUseCase(
            backend=StackRegistrationBackend(registry),
            policy=ValidationPolicy(
                network_server_enabled=NS in registry.components,
                derive_device_id_from_eui=args.derive_ids,
            ),
            submit_options=SubmitOptions.from_env(
                components=registry.components,
                set_claim_authentication_code=args.claim_auth_code,
            ),
            concurrency=args.concurrency,
            submit_timeout=args.timeout,
        )

        run = use_case.create_run(args.application, listeners=[print_progress])
        try:
            summary = await run.run(content, args.format, fallback)
        except FormatError as e:
            print(f"[Main] {args.file} is not a valid {args.format} file: {e.message}")
            return EXIT_FORMAT_ERROR

    print("\n" + "=" * 60)
    print("Operation finished" if run.state == RunState.FINISHED else "Operation halted")
    print("=" * 60)
    print(summary.message())

    duration = (datetime.now() - start_time).total_seconds()
    print(f"\n[Main] Completed in {duration:.1f} seconds")

    if run.state == RunState.FINISHED and summary.result_class == ResultClass.ALL_SUCCEEDED:
        return EXIT_OK
    return EXIT_FAILED


def main():
    formats = ", ".join(f["id"] for f in list_formats())

    parser = argparse.ArgumentParser(
        description="Import LoRaWAN end devices into an application",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Supported formats: {formats}

Examples:
  python main.py devices.json --application my-app
  python main.py devices.csv --application my-app --format the-things-stack-csv
  python main.py devices.json --application my-app --lorawan-version MAC_V1_0_3
  python main.py devices.csv --application my-app --derive-ids --concurrency 5
        """
    )

    parser.add_argument(
        "file",
        metavar="FILE",
        help="File with the end devices to import"
    )
    parser.add_argument(
        "--application",
        required=True,
        metavar="APP_ID",
        help="Application to register the end devices in"
    )
    parser.add_argument(
        "--format",
        default=DEFAULT_FORMAT_ID,
        metavar="FORMAT_ID",
        help=f"Format of FILE (default: {DEFAULT_FORMAT_ID})"
    )

    # Fallback values
    fallback_group = parser.add_argument_group("Fallback Values (for records that do not set them)")
    fallback_group.add_argument(
        "--frequency-plan-id",
        metavar="PLAN",
        help="Frequency plan, e.g. EU_863_870_TTN"
    )
    fallback_group.add_argument(
        "--lorawan-version",
        metavar="VERSION",
        help="LoRaWAN MAC version, e.g. MAC_V1_0_3"
    )
    fallback_group.add_argument(
        "--lorawan-phy-version",
        metavar="VERSION",
        help="LoRaWAN regional parameters version, e.g. PHY_V1_0_3_REV_A"
    )

    # Stack options
    stack_group = parser.add_argument_group("Stack Options")
    stack_group.add_argument(
        "--claim-auth-code",
        action="store_true",
        help="Generate a claim authentication code for every end device"
    )
    stack_group.add_argument(
        "--derive-ids",
        action="store_true",
        help="Use eui-<dev_eui> as device ID for records without one"
    )

    # Execution options
    exec_group = parser.add_argument_group("Execution Options")
    exec_group.add_argument(
        "--concurrency",
        type=int,
        default=int(os.getenv("LWS_IMPORT_CONCURRENCY", "1")),
        metavar="N",
        help="Registrations in flight at once, 1-10 (default: 1)"
    )
    exec_group.add_argument(
        "--timeout",
        type=float,
        default=float(os.getenv("LWS_IMPORT_TIMEOUT", "30")),
        metavar="SECONDS",
        help="Timeout per registration (default: 30)"
    )
    exec_group.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Log every request"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Run the async import
    sys.exit(asyncio.run(run_import(args)))


if __name__ == "__main__":
    main()
