"""
Main entry point for RSS Feed Mail.

Runs one pass of the pipeline: check feeds and email new items, only move
the cursor forward, or provision Gmail labels and filters.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from urllib.parse import urlparse

import coloredlogs
import yaml
from pydantic import ValidationError

from rss_feed_mail.config import AppConfig, load_config
from rss_feed_mail.content import ArticleExtractor
from rss_feed_mail.cursor import CursorStore, CursorWriteError
from rss_feed_mail.feed_config import ConfigFetchError, FeedConfigSource
from rss_feed_mail.labels import GmailClient, LabelProvisioner, ProvisioningError, build_gmail_service
from rss_feed_mail.mailer import SmtpMailer, sender_address
from rss_feed_mail.pipeline import DeliveryPipeline, RunMode, RunOptions, RunResult
from rss_feed_mail.rss_parser import FeedFetcher

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG_FETCH = 3
EXIT_CURSOR_WRITE = 4
EXIT_DELIVERY_FAILED = 5
EXIT_PROVISIONING = 6
EXIT_INTERRUPTED = 130


def redact_proxy_url(proxy_url: str) -> str:
    """
    Redact credentials from a proxy URL for safe logging.

    Parameters
    ----------
    proxy_url : str
        The proxy URL potentially containing credentials.

    Returns
    -------
    str
        The proxy URL with password redacted.
    """
    try:
        parsed = urlparse(proxy_url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:****@{netloc}"
            return f"{parsed.scheme}://{netloc}{parsed.path}"
        return proxy_url
    except ValueError:
        return "<proxy url>"


def setup_logging(verbose: bool = False) -> None:
    """
    Configure application logging.

    Parameters
    ----------
    verbose : bool
        If True, set log level to DEBUG.
    """
    level = logging.DEBUG if verbose else logging.INFO

    coloredlogs.install(
        level=level,
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Reduce noise from third-party libraries
    logging.getLogger("googleapiclient").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def confirm(prompt: str) -> bool:
    """Ask a yes/no question on the terminal."""
    try:
        answer = input(prompt)
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser."""
    parser = argparse.ArgumentParser(
        description="Deliver new RSS feed items to a Gmail mailbox",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "-c",
        "--config",
        default="config.yaml",
        help="Path to configuration file",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--create-labels",
        action="store_true",
        help="Create Gmail labels and filters for the feed configuration, then exit",
    )
    mode.add_argument(
        "--update-cursor-only",
        action="store_true",
        help="Move the cursor to the newest items without sending emails",
    )
    parser.add_argument(
        "--try-load-full-content",
        action="store_true",
        help="Fetch the linked article when a feed only carries a short summary",
    )
    parser.add_argument(
        "--max-retries",
        type=int,
        default=None,
        help="Send retries per email (overrides delivery.max_retries)",
    )
    parser.add_argument(
        "--retry-delay",
        type=int,
        default=None,
        metavar="MS",
        help="Initial retry delay in milliseconds (overrides delivery.retry_delay_ms)",
    )
    return parser


def options_from_args(args: argparse.Namespace, config: AppConfig) -> RunOptions:
    """Merge command line flags with the delivery configuration."""
    if args.create_labels:
        mode = RunMode.CREATE_LABELS
    elif args.update_cursor_only:
        mode = RunMode.CURSOR_ONLY
    else:
        mode = RunMode.DELIVER

    max_retries = config.delivery.max_retries if args.max_retries is None else args.max_retries
    retry_delay = config.delivery.retry_delay_ms if args.retry_delay is None else args.retry_delay

    return RunOptions(
        mode=mode,
        try_load_full_content=args.try_load_full_content,
        max_retries=max(0, max_retries),
        retry_delay_ms=max(0, retry_delay),
    )


async def run(config: AppConfig, options: RunOptions) -> RunResult:
    """
    Build the components for ``options.mode`` and run the pipeline once.

    Every component holding a connection is closed before returning.
    """
    proxy_url = config.defaults.proxy
    if proxy_url:
        logger.info("Using proxy: %s", redact_proxy_url(proxy_url))

    settings = config.feed_config
    config_source = FeedConfigSource(
        url=settings.resolved_url,
        path=settings.path,
        timeout=config.defaults.request_timeout,
        user_agent=config.defaults.user_agent,
        proxy_url=proxy_url,
    )
    fetcher = FeedFetcher(
        timeout=config.defaults.request_timeout,
        max_redirects=config.defaults.max_redirects,
        user_agent=config.defaults.user_agent,
        proxy_url=proxy_url,
        allow_insecure_tls=config.defaults.allow_insecure_tls,
    )
    mailer = None
    extractor = None
    provisioner = None

    try:
        if options.mode is RunMode.CREATE_LABELS:
            if config.gmail is None:
                raise ProvisioningError("Label provisioning needs gmail OAuth credentials")
            provisioner = LabelProvisioner(
                GmailClient(build_gmail_service(config.gmail)),
                sender=sender_address(config.email.sender),
                root_label=config.delivery.root_label,
                title_resolver=fetcher.fetch_title,
            )
        elif options.mode is RunMode.DELIVER:
            mailer = SmtpMailer(config.smtp, oauth=config.gmail, username=config.email.recipient)
            if options.try_load_full_content:
                extractor = ArticleExtractor(
                    timeout=config.defaults.request_timeout,
                    user_agent=config.defaults.user_agent,
                    proxy_url=proxy_url,
                )

        pipeline = DeliveryPipeline(
            config_source=config_source,
            fetcher=fetcher,
            cursor_store=CursorStore(config.storage.cursor_path),
            mailer=mailer,
            sender=config.email.sender,
            recipient=config.email.recipient,
            root_label=config.delivery.root_label,
            extractor=extractor,
            provisioner=provisioner,
            confirm=confirm,
            max_concurrency=config.defaults.max_concurrency,
            full_content_word_threshold=config.defaults.full_content_word_threshold,
        )
        return await pipeline.run(options)
    finally:
        await fetcher.close()
        if extractor:
            await extractor.close()
        if mailer:
            await mailer.close()


def exit_code_for(result: RunResult) -> int:
    """Map a finished run to a process exit code."""
    if result.mode is RunMode.DELIVER and result.report.failed:
        return EXIT_DELIVERY_FAILED
    if result.mode is RunMode.CREATE_LABELS and result.provisioning and result.provisioning.failures:
        logger.warning(
            "%d label or filter operation(s) failed:\n%s",
            len(result.provisioning.failures),
            "\n".join(result.provisioning.failures),
        )
        return EXIT_PROVISIONING
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    setup_logging(args.verbose)

    config_path = Path(args.config)
    try:
        config = load_config(config_path)
    except FileNotFoundError:
        logger.error("Configuration file not found: %s", config_path)
        return EXIT_ERROR
    except (yaml.YAMLError, ValidationError, ValueError) as e:
        logger.error("Invalid configuration in %s: %s", config_path, e)
        return EXIT_ERROR

    options = options_from_args(args, config)

    try:
        result = asyncio.run(run(config, options))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return EXIT_INTERRUPTED
    except ConfigFetchError as e:
        logger.error("Error fetching feed configuration: %s", e)
        return EXIT_CONFIG_FETCH
    except CursorWriteError as e:
        logger.error("Error updating cursor: %s", e)
        return EXIT_CURSOR_WRITE
    except ProvisioningError as e:
        logger.error("Error creating labels: %s", e)
        return EXIT_PROVISIONING
    except Exception:
        logger.exception("An error occurred")
        return EXIT_ERROR

    return exit_code_for(result)


if __name__ == "__main__":
    sys.exit(main())
