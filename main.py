import sys
import asyncio
import argparse
import logging

from typing import Optional

from config.config import AppConfig
from core.bootstrap import Services
from core.bootstrap import build_services
from core.exceptions import ValidationError
from core.publisher import LoggingProgressSink
from utils.logging_setup import configure_runtime_logging
from utils.oauth_local_auth import LocalServerAuthorizationLauncher
from utils.oauth_local_auth import capture_oauth_code_by_local_server
from utils.oauth_local_auth import persist_user_tokens_to_env


logger = logging.getLogger(__name__)


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    """Parse CLI arguments for publish command.

    Args:
        argv: Optional argument list, sys.argv is used when None.
    """

    parser = argparse.ArgumentParser(
        description = "Publish a local markdown file as a Feishu document"
    )
    parser.add_argument("--file", default = "", help = "Local markdown file path")
    parser.add_argument("--title", default = "", help = "Document title, defaults to front matter/heading/file name")
    parser.add_argument(
        "--update-url",
        default = "",
        help = "Existing Feishu document URL to overwrite instead of creating a new one"
    )
    parser.add_argument(
        "--no-interactive",
        action = "store_true",
        help = "Never start browser re-authorization; fail when token is unusable"
    )

    parser.add_argument(
        "--auth-code",
        default = "",
        help = "One-time Feishu OAuth code to bootstrap user token"
    )
    parser.add_argument("--print-auth-url", action = "store_true", help = "Print OAuth authorize URL and exit")
    parser.add_argument(
        "--oauth-local-server",
        action = "store_true",
        help = "Start local callback server, capture code, and exchange token automatically"
    )
    parser.add_argument(
        "--oauth-timeout",
        type = int,
        default = 300,
        help = "OAuth callback wait timeout in seconds"
    )
    parser.add_argument(
        "--oauth-open-browser",
        action = argparse.BooleanOptionalAction,
        default = True,
        help = "Open OAuth URL in browser automatically for local auth"
    )
    parser.add_argument(
        "--persist-user-token-env",
        action = argparse.BooleanOptionalAction,
        default = True,
        help = "Persist FEISHU_USER_ACCESS_TOKEN and FEISHU_USER_REFRESH_TOKEN into .env"
    )

    return parser.parse_args(argv)


def validate_args(args: argparse.Namespace) -> None:
    """Validate combinations of CLI arguments.

    Args:
        args: Parsed CLI arguments.
    """

    if args.oauth_timeout < 1:
        raise ValidationError("--oauth-timeout must be >= 1")
    if args.oauth_local_server and args.auth_code:
        raise ValidationError("--oauth-local-server and --auth-code cannot be used together")
    has_auth_action = args.print_auth_url or args.oauth_local_server or args.auth_code
    if not args.file and not has_auth_action:
        raise ValidationError("--file is required unless an OAuth option is given")
    if args.update_url and not args.file:
        raise ValidationError("--update-url requires --file")


async def run(args: argparse.Namespace, config: AppConfig, services: Optional[Services] = None) -> int:
    """Run one CLI invocation.

    Args:
        args: Parsed CLI arguments.
        config: Runtime configuration.
        services: Optional prebuilt services, used by tests.
    """

    interactive = not args.no_interactive
    if services is None:
        services = build_services(config = config, interactive = interactive)
        services.token_manager.authorization_launcher = LocalServerAuthorizationLauncher(
            token_manager = services.token_manager,
            redirect_uri = config.feishu_oauth_redirect_uri,
            timeout_seconds = config.reauth_timeout_seconds,
            open_browser = args.oauth_open_browser
        )
    token_manager = services.token_manager

    try:
        if args.print_auth_url:
            print(token_manager.build_authorize_url())
            return 0

        if args.oauth_local_server:
            authorize_url = token_manager.build_authorize_url()
            auth_code = await asyncio.to_thread(
                capture_oauth_code_by_local_server,
                authorize_url,
                config.feishu_oauth_redirect_uri,
                args.oauth_timeout,
                args.oauth_open_browser
            )
            await token_manager.exchange_code_for_token(code = auth_code)
            logger.info("OAuth local auth succeeded. token cache path = %s", config.feishu_user_token_cache_path)
            _persist_tokens(args = args, config = config, services = services)
        elif args.auth_code:
            await token_manager.exchange_code_for_token(code = args.auth_code)
            logger.info("OAuth code exchanged successfully; token cache path = %s", config.feishu_user_token_cache_path)
            _persist_tokens(args = args, config = config, services = services)

        if not args.file:
            return 0

        publisher = services.publisher
        transformed = publisher.prepare_file(file_path = args.file, title = args.title)
        progress = LoggingProgressSink(name = "cli")
        if args.update_url:
            update_result = await publisher.update_existing(
                existing_url = args.update_url,
                title = transformed.title,
                content = transformed.content,
                pending_contents = transformed.pending_contents,
                progress = progress
            )
            if not update_result.success:
                logger.error("Update failed: %s", update_result.error)
                return 1
            print(update_result.url)
            return 0

        publish_result = await publisher.publish(
            title = transformed.title,
            content = transformed.content,
            pending_contents = transformed.pending_contents,
            progress = progress
        )
        if not publish_result.success:
            logger.error("Publish failed: %s", publish_result.error)
            return 1
        if publish_result.error:
            logger.warning("Published with warnings: %s", publish_result.error)
        print(publish_result.url)
        return 0
    finally:
        await services.aclose()


def _persist_tokens(args: argparse.Namespace, config: AppConfig, services: Services) -> None:
    if not args.persist_user_token_env:
        return
    persist_user_tokens_to_env(
        access_token = services.token_manager.access_token,
        refresh_token = services.token_manager.refresh_token,
        token_cache_path = config.feishu_user_token_cache_path
    )
    logger.info("Updated .env with user token fields.")


def main(argv: Optional[list] = None) -> int:
    """CLI entrypoint.

    Args:
        argv: Optional argument list.
    """

    args = parse_args(argv)
    validate_args(args = args)
    config = AppConfig.from_env()
    return asyncio.run(run(args = args, config = config))


if __name__ == "__main__":
    configure_runtime_logging()

    try:
        exit_code = main()
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        exit_code = 130
    except Exception as exc:
        logger.exception("Fatal error: %s", str(exc))
        exit_code = 1

    sys.exit(exit_code)
