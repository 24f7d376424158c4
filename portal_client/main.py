"""
Main entry point for the Portal Client diagnostics CLI.

Signs sample requests, inspects bearer tokens and reports the session
store's security assessment, so that a deployment's configuration can be
checked without a browser or a running portal.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from portal_client.auth.identity_provider import (
    IdentityProvider, IdentityProviderError, TokenResponse
)
from portal_client.auth.request_signer import HttpMethod, RequestSigner
from portal_client.auth.session_store import SessionTier, TieredSessionStore
from portal_client.auth.token_manager import TokenManager, parse_token_expiry
from portal_client.config import PortalConfiguration
from portal_shared.exceptions import ConfigurationError, ErrorCode, handle_exception
from portal_shared.logging_config import (
    LogFormat, LogLevel, log_structured_error, setup_logging
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2


class OfflineIdentityProvider(IdentityProvider):
    """Identity provider for commands that inspect tokens but never refresh them."""

    async def acquire_token_silent(self, scopes: List[str], account: Any) -> TokenResponse:
        raise IdentityProviderError("no_identity_provider", "No identity provider in diagnostics mode")

    async def login_interactive(self, scopes: List[str]) -> TokenResponse:
        raise IdentityProviderError("no_identity_provider", "No identity provider in diagnostics mode")


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="portal-client",
        description="Portal Client diagnostics",
        epilog="""
Examples:
  %(prog)s sign POST --token eyJ...     # Print signed headers for a POST
  %(prog)s sign GET --no-auth           # Headers for an unauthenticated GET
  %(prog)s check-token eyJ... --validate
  %(prog)s assess --tier persistent --json
  %(prog)s env

Exit Codes:
  0 - Success
  1 - Operation failed (token expiring or rejected)
  2 - Configuration error
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    config_group = parser.add_argument_group('Configuration')
    config_group.add_argument("--config", type=str, metavar="FILE",
                              help="Path to configuration file")

    output_group = parser.add_argument_group('Output')
    output_group.add_argument("--json", action="store_true",
                              help="Output results in JSON format")

    debug_group = parser.add_argument_group('Debug')
    debug_group.add_argument("--debug", action="store_true",
                             help="Enable debug logging")
    debug_group.add_argument("--log-file", type=str, metavar="FILE",
                             help="Write logs to file")

    subparsers = parser.add_subparsers(dest="command", required=True)

    sign_parser = subparsers.add_parser("sign", help="Print the signed headers for a request")
    sign_parser.add_argument("method", type=str.upper,
                             choices=[method.value for method in HttpMethod])
    sign_parser.add_argument("--token", type=str, help="Bearer token to include")
    sign_parser.add_argument("--no-auth", action="store_true",
                             help="Omit the Authorization header")
    sign_parser.add_argument("--content-type", type=str, default=None,
                             help="Body content type (ignored for GET and DELETE)")

    token_parser = subparsers.add_parser("check-token", help="Check a token's expiry")
    token_parser.add_argument("token", type=str)
    token_parser.add_argument("--validate", action="store_true",
                              help="Also validate the token against the identity endpoint")

    assess_parser = subparsers.add_parser("assess", help="Report the session store security assessment")
    assess_parser.add_argument("--tier", type=str, default=None,
                               help="Tier to assess (defaults to the configured security level)")

    subparsers.add_parser("env", help="Show the effective, non-secret configuration")

    return parser.parse_args(argv)


def configure_logging(args: argparse.Namespace, config: PortalConfiguration) -> None:
    """Configure logging based on command line arguments and configuration."""
    if args.debug:
        log_level = LogLevel.DEBUG
    elif args.json:
        # Keep stdout parseable
        log_level = LogLevel.ERROR
    else:
        try:
            log_level = LogLevel(config.get_log_level())
        except ValueError:
            log_level = LogLevel.WARNING

    try:
        log_format = LogFormat(config.get_log_format())
    except ValueError:
        log_format = LogFormat.STANDARD

    setup_logging(
        log_level=log_level,
        log_format=log_format,
        log_file=args.log_file or config.get_log_file(),
        audit_file=config.get_audit_file()
    )


def _emit(args: argparse.Namespace, payload: Dict[str, Any], lines: List[str]) -> None:
    if args.json:
        print(json.dumps(payload, indent=2))
    else:
        for line in lines:
            print(line)


def handle_sign_command(args: argparse.Namespace, config: PortalConfiguration) -> int:
    config.validate()
    signer = RequestSigner(
        client_id=config.get_client_id(),
        shared_secret=config.get_shared_secret(),
        api_key=config.get_api_key(),
        origin=config.get_origin()
    )

    if args.no_auth:
        signed = signer.sign_without_authorization(args.method, args.content_type)
    else:
        signed = signer.sign(args.method, args.token, args.content_type)

    headers = signed.to_headers()
    _emit(args, headers, [f"{name}: {value}" for name, value in headers.items()])
    return EXIT_OK


def handle_check_token_command(args: argparse.Namespace, config: PortalConfiguration) -> int:
    manager = TokenManager(
        OfflineIdentityProvider(),
        refresh_threshold_seconds=config.get_refresh_threshold_seconds(),
        graph_url=config.get_graph_url(),
        validation_timeout=config.get_validation_timeout()
    )

    expiring = manager.is_token_expiring(args.token)
    result: Dict[str, Any] = {
        'expires_at': parse_token_expiry(args.token),
        'expiring': expiring,
    }
    lines = [
        f"Expires at: {result['expires_at'] if result['expires_at'] is not None else 'unknown'}",
        f"Expiring: {'yes' if expiring else 'no'}",
    ]

    valid = True
    if args.validate:
        valid = asyncio.run(manager.validate_token_with_graph(args.token))
        result['valid'] = valid
        lines.append(f"Accepted by identity endpoint: {'yes' if valid else 'no'}")

    _emit(args, result, lines)
    return EXIT_OK if valid and not expiring else EXIT_FAILED


def handle_assess_command(args: argparse.Namespace, config: PortalConfiguration) -> int:
    tier_name = args.tier or config.get_security_level()
    try:
        tier = SessionTier.parse(tier_name)
    except ValueError as e:
        raise ConfigurationError(str(e), ErrorCode.CONFIG_INVALID_VALUE,
                                 config_key='session.security_level', cause=e) from e

    store = TieredSessionStore(
        tier=tier,
        production=config.is_production(),
        storage_dir=config.get_session_storage_dir(),
        quota_bytes=config.get_session_quota_bytes()
    )
    try:
        assessment = store.assess_security()
    finally:
        store.dispose()

    lines = [f"Security level: {assessment.tier.value}"]
    if assessment.tier_overridden:
        lines.append(f"  (requested {assessment.requested_tier.value}, overridden in production)")
    lines.append("Risks:")
    lines.extend(f"  - {risk}" for risk in assessment.risks)
    if assessment.recommendations:
        lines.append("Recommendations:")
        lines.extend(f"  - {item}" for item in assessment.recommendations)
    lines.append(f"Penetration test ready: {'yes' if assessment.penetration_test_ready else 'no'}")

    _emit(args, assessment.to_dict(), lines)
    return EXIT_OK


def handle_env_command(args: argparse.Namespace, config: PortalConfiguration) -> int:
    description = config.describe()
    _emit(args, description, [f"{key}: {value}" for key, value in description.items()])
    return EXIT_OK


COMMANDS = {
    'sign': handle_sign_command,
    'check-token': handle_check_token_command,
    'assess': handle_assess_command,
    'env': handle_env_command,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    args = parse_arguments(argv)

    try:
        config = PortalConfiguration(args.config)
        configure_logging(args, config)
        return COMMANDS[args.command](args, config)

    except ConfigurationError as e:
        log_structured_error(logger, e)
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return 130
    except Exception as e:
        error = handle_exception(e, context={'command': args.command})
        log_structured_error(logger, error)
        print(f"Error: {error.message}", file=sys.stderr)
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
