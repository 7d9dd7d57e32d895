import argparse
from dataclasses import dataclass, field

from hourmeter.config import Config
from hourmeter.exporter import DEFAULT_CONCURRENCY
from hourmeter.selection import DEFAULT_MAX_HOURS_PER_RUN

EPILOG = """\
environment:
  HOURMETER_INGEST_TOKEN     bearer token, required with --upload
  HOURMETER_INGEST_URL       full ingest endpoint URL, or
  HOURMETER_INGEST_BASE_URL  base URL, /api/usage/<product>/hourly is appended
  HOURMETER_INGEST_PRODUCT   product segment of the ingest path (default: zulipclaw)
  HOURMETER_EXPORT_DIR       default --output-dir
  HOURMETER_STATE_DIR        transcript root (default: ~/.openclaw)
  HOURMETER_UPLOAD_TIMEOUT   upload timeout in seconds (default: 30)

examples:
  # hourly cron mode, previous UTC hour
  hourmeter --output-dir /tmp/hourly --upload --json

  # one-time range backfill
  hourmeter --from 2026-02-01T00:00:00Z --to 2026-02-07T23:00:00Z \\
      --chunk-by-hour --output-dir /tmp/hourly --upload --force --json
"""


@dataclass
class CliArgs:
    config: "Config" = field(default_factory=Config)
    hour: "str | None" = None
    from_hour: "str | None" = None
    to_hour: "str | None" = None
    all_hours: "bool" = False
    output: "str | None" = None
    output_dir: "str | None" = None
    chunk_by_hour: "bool" = False
    upload: "bool" = False
    dry_run: "bool" = False
    max_hours: "int" = DEFAULT_MAX_HOURS_PER_RUN
    force: "bool" = False
    print_csv: "bool" = False
    json: "bool" = False
    concurrency: "int" = DEFAULT_CONCURRENCY
    metrics_textfile: "str | None" = None
    log_format: "str" = "console"


def _positive_int(raw: "str") -> "int":
    try:
        value = int(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid positive integer: {raw}")
    if value <= 0:
        raise argparse.ArgumentTypeError(f"invalid positive integer: {raw}")
    return value


def _positive_float(raw: "str") -> "float":
    try:
        value = float(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid positive number: {raw}")
    if value <= 0:
        raise argparse.ArgumentTypeError(f"invalid positive number: {raw}")
    return value


def build_parser() -> "argparse.ArgumentParser":
    parser = argparse.ArgumentParser(
        prog="hourmeter",
        description=(
            "Export transcript usage for one or more UTC hours as CSV and "
            "optionally upload it to the usage ingest endpoint. Without hour "
            "flags the previous UTC hour is exported (cron-safe)."
        ),
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    hours = parser.add_argument_group("hour selection")
    hours.add_argument("--hour", help="single UTC hour start (YYYY-MM-DDTHH:00:00Z)")
    hours.add_argument(
        "--from", dest="from_hour", help="inclusive UTC start hour of a backfill"
    )
    hours.add_argument(
        "--to", dest="to_hour", help="inclusive UTC end hour of a backfill"
    )
    hours.add_argument(
        "--all-hours",
        action="store_true",
        help="replay from the earliest transcript hour through the previous UTC hour",
    )

    output = parser.add_argument_group("output and upload")
    target = output.add_mutually_exclusive_group()
    target.add_argument("--output", help="write the CSV to this file")
    target.add_argument(
        "--output-dir", help="write CSV files under this directory (auto file names)"
    )
    output.add_argument(
        "--chunk-by-hour",
        action="store_true",
        help="for ranges, write one CSV per hour (requires --output-dir for files)",
    )
    output.add_argument(
        "--upload",
        action="store_true",
        help="POST each hour's CSV to the ingest endpoint",
    )
    output.add_argument(
        "--print-csv", action="store_true", help="print the CSV to stdout"
    )
    output.add_argument(
        "--json", action="store_true", help="print the run summary as JSON"
    )
    output.add_argument(
        "--metrics-textfile",
        help="write Prometheus run metrics to this file (textfile collector format)",
    )

    guard = parser.add_argument_group("guardrails")
    guard.add_argument(
        "--max-hours",
        type=_positive_int,
        default=DEFAULT_MAX_HOURS_PER_RUN,
        help=(
            "refuse runs above n hours unless --force "
            f"(default: {DEFAULT_MAX_HOURS_PER_RUN})"
        ),
    )
    guard.add_argument("--force", action="store_true", help="override --max-hours")
    guard.add_argument(
        "--dry-run",
        action="store_true",
        help="export and write files without uploading",
    )

    runtime = parser.add_argument_group("runtime")
    runtime.add_argument("--state-dir", help="transcript root (default: ~/.openclaw)")
    runtime.add_argument(
        "--concurrency",
        type=_positive_int,
        default=DEFAULT_CONCURRENCY,
        help=f"transcripts read in parallel (default: {DEFAULT_CONCURRENCY})",
    )
    runtime.add_argument(
        "--upload-timeout",
        type=_positive_float,
        help="upload request timeout in seconds (default: 30)",
    )
    runtime.add_argument(
        "--log-level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    runtime.add_argument(
        "--log-format",
        default="console",
        choices=["console", "json"],
        help="Log format (default: console)",
    )
    return parser


def parse_args(argv: "list[str] | None" = None) -> "CliArgs":
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.all_hours and (args.hour or args.from_hour or args.to_hour):
        parser.error("--all-hours cannot be combined with --hour, --from, or --to.")
    if args.hour and (args.from_hour or args.to_hour):
        parser.error("--hour cannot be combined with --from/--to.")

    config = Config.from_env()
    config.log_level = args.log_level
    if args.state_dir:
        config.state_dir = args.state_dir
    if args.upload_timeout is not None:
        config.upload_timeout = args.upload_timeout

    output_dir = args.output_dir
    if output_dir is None and args.output is None and config.export_dir:
        output_dir = config.export_dir

    return CliArgs(
        config=config,
        hour=args.hour,
        from_hour=args.from_hour,
        to_hour=args.to_hour,
        all_hours=args.all_hours,
        output=args.output,
        output_dir=output_dir,
        chunk_by_hour=args.chunk_by_hour,
        upload=args.upload,
        dry_run=args.dry_run,
        max_hours=args.max_hours,
        force=args.force,
        print_csv=args.print_csv,
        json=args.json,
        concurrency=args.concurrency,
        metrics_textfile=args.metrics_textfile,
        log_format=args.log_format,
    )
