"""Command line entry point: ``newsletter-desk <command>``."""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Callable, Sequence

import uvicorn

from newsletter_desk.core.config import Settings, get_settings
from newsletter_desk.core.errors import ConfigMissingError, NewsletterError, SubscriberNotFoundError
from newsletter_desk.db.models import SubscriberStatus
from newsletter_desk.internal_ui.review_console import run_console
from newsletter_desk.services.composer import Newsletter, preview
from newsletter_desk.services.migration import FormatConfig, MigrationImporter, MigrationSource
from newsletter_desk.services.newsletter_service import NewsletterService
from newsletter_desk.services.plugins import PluginContext, PluginHook, save_plugin_configs
from newsletter_desk.services.review import ReviewSession
from newsletter_desk.services.subscribers import SubscriberStore
from newsletter_desk.utils.logger import configure_logging, get_logger

logger = get_logger(__name__)


def build_service(settings: Settings) -> NewsletterService:
    return NewsletterService(settings, SubscriberStore.open(settings.database_url))


def _status(value: str | None) -> SubscriberStatus | None:
    return SubscriberStatus.parse(value) if value else None


def _confirm(question: str) -> bool:
    answer = input(f"{question} [y/N]: ").strip().lower()
    return answer in ("y", "yes")


def handle_status(service: NewsletterService, args: argparse.Namespace) -> None:
    settings = service.settings
    stats = service.stats()
    print(f"Newsletter enabled: {'yes' if settings.newsletter_enabled else 'no'}")
    print(f"Database: {settings.database_url}")
    print(f"Subscribers: {stats['total']} total")
    for status in SubscriberStatus:
        print(f"  {status.value}: {stats[status.value]}")


def handle_fetch(service: NewsletterService, args: argparse.Namespace) -> None:
    result = service.fetch_subscribers()
    print(f"Fetched {result.fetched} new emails, {result.candidates} subscription requests")
    print(f"Added {len(result.added)} new subscribers")
    for subscriber in result.added:
        print(f"  + {subscriber.email}")
    if result.skipped_existing:
        print(f"Already known: {', '.join(result.skipped_existing)}")
    if result.unmarked_ids:
        print(f"Could not mark as seen: {', '.join(result.unmarked_ids)}")
    if args.interactive and result.added and _confirm("Review pending subscribers now?"):
        handle_approve(service, args)


def handle_approve(service: NewsletterService, args: argparse.Namespace) -> None:
    view = run_console(ReviewSession(service.store))
    counts = view.counts()
    print(", ".join(f"{status.value}: {count}" for status, count in counts.items()))


def handle_list(service: NewsletterService, args: argparse.Namespace) -> None:
    subscribers = service.store.list(_status(args.status))
    if not subscribers:
        print("No subscribers found.")
        return
    for subscriber in subscribers:
        approved = f"{subscriber.approved_at:%Y-%m-%d}" if subscriber.approved_at else "-"
        print(f"{subscriber.email:<40} {subscriber.status.value:<9} {subscriber.subscribed_at:%Y-%m-%d} {approved}")
    print(f"\n{len(subscribers)} subscriber(s)")


def handle_export(service: NewsletterService, args: argparse.Namespace) -> None:
    content = service.export(args.format, _status(args.status))
    if args.output:
        Path(args.output).write_text(content, encoding="utf-8")
        print(f"Exported subscribers to {args.output}")
    else:
        print(content)


def handle_remove(service: NewsletterService, args: argparse.Namespace) -> None:
    if service.store.get_by_email(args.email) is None:
        raise SubscriberNotFoundError(args.email)
    if not args.force and not _confirm(f"Remove {args.email} permanently?"):
        print("Cancelled.")
        return
    service.store.remove(args.email)
    print(f"Removed {args.email}")


def handle_import(service: NewsletterService, args: argparse.Namespace) -> None:
    source = MigrationSource.parse(args.source)
    config = FormatConfig.for_source(source).with_overrides(
        email_column=args.email_column,
        name_column=args.name_column,
        status_column=args.status_column,
    )
    importer = MigrationImporter(service.store)
    parsed = importer.parse_file(source, args.file, config)
    if args.preview:
        rows = importer.preview(parsed, args.preview_limit)
        for row in rows:
            print(f"{row.email:<40} {row.name or '-':<20} {row.status or '-'}")
        print(f"\nPreview shows {len(rows)} of {len(parsed.records)} subscribers")
        for error in parsed.errors:
            print(f"  error: {error}")
        return

    result = importer.import_(parsed)
    print("Migration completed:")
    print(f"  Total processed: {result.total_processed}")
    print(f"  Successfully imported: {result.successfully_imported}")
    print(f"  Skipped duplicates: {result.skipped_duplicates}")
    print(f"  Errors: {len(result.errors)}")
    for error in result.errors:
        print(f"    {error}")


def _send(service: NewsletterService, newsletter: Newsletter, interactive: bool) -> None:
    if interactive:
        print(preview(newsletter))
        if not _confirm("Send this newsletter to all approved subscribers?"):
            print("Cancelled.")
            return
    report = service.send(newsletter, progress=lambda done, total: print(f"  {done}/{total}"))
    print(f"Sent {report.successful_sends}/{report.total_subscribers} ({report.success_rate():.0%})")
    for error in report.errors:
        print(f"  failed: {error.error_message}")
    if report.failed_sends:
        raise NewsletterError(f"{report.failed_sends} send(s) failed")


def handle_send_latest(service: NewsletterService, args: argparse.Namespace) -> None:
    _send(service, service.compose_latest(), args.interactive)


def handle_send_custom(service: NewsletterService, args: argparse.Namespace) -> None:
    _send(service, service.compose_custom(args.subject, args.content), args.interactive)


def handle_draft_latest(service: NewsletterService, args: argparse.Namespace) -> None:
    print(preview(service.compose_latest()))


def handle_draft_custom(service: NewsletterService, args: argparse.Namespace) -> None:
    print(preview(service.compose_custom(args.subject, args.content)))


def handle_test_email(service: NewsletterService, args: argparse.Namespace) -> None:
    newsletter = service.compose_custom(
        "Test newsletter",
        "This is a test email. If you received it, your SMTP configuration works.",
    )
    service.send_test(newsletter, args.email)
    print(f"Test email sent to {args.email}")


def handle_plugin(service: NewsletterService, args: argparse.Namespace) -> None:
    plugins = service.plugins
    if args.plugin_command == "list":
        for metadata in plugins.list():
            state = "enabled" if plugins.is_enabled(metadata.name) else "disabled"
            print(f"{metadata.name:<24} {metadata.version:<8} {state:<9} {metadata.description}")
        return

    if args.plugin_command == "info":
        plugin = plugins.get(args.name)
        if plugin is None:
            raise NewsletterError(f"Plugin '{args.name}' not found")
        metadata = plugin.metadata
        print(f"Name: {metadata.name}\nVersion: {metadata.version}\nAuthor: {metadata.author}")
        print(f"Description: {metadata.description}")
        print(f"Enabled: {'yes' if plugins.is_enabled(metadata.name) else 'no'}")
        if plugin.custom_commands():
            print(f"Commands: {', '.join(plugin.custom_commands())}")
        return

    if args.plugin_command in ("enable", "disable"):
        plugins.set_enabled(args.name, args.plugin_command == "enable")
        save_plugin_configs(service.settings.plugins_file, plugins.configs)
        print(f"Plugin '{args.name}' {args.plugin_command}d")
        return

    context = PluginContext(hook=PluginHook.CUSTOM_COMMAND, store=service.store)
    result = plugins.execute_command(args.name, list(args.args), context)
    if result.message:
        print(result.message)
    for key, value in result.data.items():
        print(f"  {key}: {value}")
    if not result.success:
        raise NewsletterError(result.message or f"Command '{args.name}' failed")


def handle_serve(service: NewsletterService, args: argparse.Namespace) -> None:
    uvicorn.run("newsletter_desk.api.app:app", host=args.host, port=args.port)


HANDLERS: dict[str, Callable[[NewsletterService, argparse.Namespace], None]] = {
    "status": handle_status,
    "fetch-subscribers": handle_fetch,
    "approve": handle_approve,
    "list": handle_list,
    "export": handle_export,
    "remove": handle_remove,
    "import": handle_import,
    "send-latest": handle_send_latest,
    "send-custom": handle_send_custom,
    "draft-latest": handle_draft_latest,
    "draft-custom": handle_draft_custom,
    "test-email": handle_test_email,
    "plugin": handle_plugin,
    "serve": handle_serve,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="newsletter-desk", description="Newsletter subscriber management")
    parser.add_argument("--log-level", default=None, help="Override the log level (DEBUG, INFO, ...)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("status", help="Show configuration and subscriber counts")

    fetch = subparsers.add_parser("fetch-subscribers", help="Fetch subscription requests from the inbox")
    fetch.add_argument("--interactive", action="store_true", help="Offer to review new subscribers")

    subparsers.add_parser("approve", help="Review pending subscribers")

    list_parser = subparsers.add_parser("list", help="List subscribers")
    list_parser.add_argument("--status", choices=[status.value for status in SubscriberStatus])

    export = subparsers.add_parser("export", help="Export subscribers to CSV or JSON")
    export.add_argument("-f", "--format", default="csv", choices=["csv", "json"])
    export.add_argument("-o", "--output", help="Output file (stdout when omitted)")
    export.add_argument("--status", choices=[status.value for status in SubscriberStatus])

    remove = subparsers.add_parser("remove", help="Remove a subscriber permanently")
    remove.add_argument("email")
    remove.add_argument("-f", "--force", action="store_true", help="Skip the confirmation prompt")

    import_parser = subparsers.add_parser("import", help="Import subscribers from another service")
    import_parser.add_argument("source", help="mailchimp, convertkit, substack, beehiiv, generic or json")
    import_parser.add_argument("file", help="Path to the CSV or JSON export")
    import_parser.add_argument("--preview", action="store_true", help="Show rows without importing")
    import_parser.add_argument("--preview-limit", type=int, default=10)
    import_parser.add_argument("--email-column")
    import_parser.add_argument("--name-column")
    import_parser.add_argument("--status-column")

    send_latest = subparsers.add_parser("send-latest", help="Send the latest post to approved subscribers")
    send_latest.add_argument("--interactive", action="store_true", help="Preview and confirm before sending")

    send_custom = subparsers.add_parser("send-custom", help="Send a custom newsletter")
    send_custom.add_argument("subject")
    send_custom.add_argument("content", help="Markdown content")
    send_custom.add_argument("--interactive", action="store_true", help="Preview and confirm before sending")

    subparsers.add_parser("draft-latest", help="Preview the latest-post newsletter")

    draft_custom = subparsers.add_parser("draft-custom", help="Preview a custom newsletter")
    draft_custom.add_argument("subject")
    draft_custom.add_argument("content")

    test_email = subparsers.add_parser("test-email", help="Send a test email")
    test_email.add_argument("email")

    plugin = subparsers.add_parser("plugin", help="Manage plugins")
    plugin_commands = plugin.add_subparsers(dest="plugin_command", required=True)
    plugin_commands.add_parser("list", help="List plugins")
    for name in ("info", "enable", "disable"):
        sub = plugin_commands.add_parser(name, help=f"{name.capitalize()} a plugin")
        sub.add_argument("name")
    run = plugin_commands.add_parser("run", help="Run a plugin command")
    run.add_argument("name", help="Command name")
    run.add_argument("args", nargs="*")

    serve = subparsers.add_parser("serve", help="Start the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=3001)

    return parser


def main(argv: Sequence[str] | None = None, settings: Settings | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    settings = settings or get_settings()

    try:
        service = build_service(settings)
        HANDLERS[args.command](service, args)
    except ConfigMissingError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        if exc.hint:
            print(exc.hint, file=sys.stderr)
        return 1
    except (NewsletterError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


def main_entry() -> None:
    sys.exit(main())


if __name__ == "__main__":  # pragma: no cover - manual execution
    main_entry()
