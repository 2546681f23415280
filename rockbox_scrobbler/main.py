import argparse
import getpass
import logging
import os
import sys

from rockbox_scrobbler import __version__
from rockbox_scrobbler.accounts import DEFAULT_CONFIG_PATH, ConfigError, load_config, save_config
from rockbox_scrobbler.lastfm_client import AuthenticationFailed, ScrobbleClient
from rockbox_scrobbler.notifier import Alert, run_alerts
from rockbox_scrobbler.notifier import from_env as alerts_from_env
from rockbox_scrobbler.playback_log import PlaybackLog
from rockbox_scrobbler.scrobbler import DiagnosticKind, RunReport, Scrobbler
from rockbox_scrobbler.submission_store import SubmissionStore
from rockbox_scrobbler.tagcache import RockboxFormatError, TagCache

# -------------------------
# Configuration via ENV VARS
# -------------------------
ROCKBOX_DIR = os.getenv("ROCKBOX_DIR", ".rockbox")
PLAYBACK_LOG = os.getenv("PLAYBACK_LOG")
CONFIG_PATH = os.getenv("SCROBBLER_CONFIG", DEFAULT_CONFIG_PATH)
STATE_PATH = os.getenv(
    "SUBMISSION_STATE_PATH",
    os.path.join(os.path.expanduser("~"), ".local", "state", "rockbox-2-lastfm", "submissions.jsonl"),
)
LOCAL_TIME = os.getenv("ROCKBOX_LOCAL_TIME", "1").lower() not in ("0", "false", "no")
MAX_ATTEMPTS = max(1, int(os.getenv("MAX_ATTEMPTS", "4")))
HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "30"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

log = logging.getLogger("rockbox-lastfm")


def configure_logging(debug_response: bool = False) -> None:
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        force=True,  # ensure our config is used even if libs pre-configure logging
    )
    if debug_response:
        logging.getLogger("lastfm").setLevel(logging.DEBUG)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rockbox-2-lastfm", description="Scrobble Rockbox playback logs")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config-path", default=CONFIG_PATH, help="Account store (JSON)")
    commands = parser.add_subparsers(dest="command", required=True)

    service = commands.add_parser("service", help="Manage service API keys")
    service_cmds = service.add_subparsers(dest="service_command", required=True)
    set_keys = service_cmds.add_parser("set-keys", help="Store API key/secret for a service")
    set_keys.add_argument("service")
    set_keys.add_argument("--api-key", required=True)
    set_keys.add_argument("--api-secret", required=True)

    account = commands.add_parser("account", help="Manage scrobbling accounts")
    account_cmds = account.add_subparsers(dest="account_command", required=True)
    add = account_cmds.add_parser("add", help="Add or update an account")
    add.add_argument("service")
    add.add_argument("--username", required=True)
    add.add_argument("--password", help="Prompted for when omitted")
    remove = account_cmds.add_parser("remove", help="Remove an account")
    remove.add_argument("service")
    remove.add_argument("--username", required=True)
    list_ = account_cmds.add_parser("list", help="List accounts")
    list_.add_argument("--service")

    scrobble = commands.add_parser("scrobble", help="Submit the playback log")
    scrobble.add_argument("--rockbox-dir", default=ROCKBOX_DIR, help="Path to the .rockbox directory")
    scrobble.add_argument("--playback-log", default=PLAYBACK_LOG, help="Defaults to <rockbox-dir>/playback.log")
    scrobble.add_argument("--service", help="Limit to one service")
    scrobble.add_argument("--username", help="Limit to one username")
    scrobble.add_argument("--state-path", default=STATE_PATH, help="Submission record file")
    scrobble.add_argument("--no-truncate", action="store_true", help="Leave the playback log alone after success")
    scrobble.add_argument("--remove-log", action="store_true", help="Delete the log instead of truncating it")
    scrobble.add_argument("--dry-run", action="store_true", help="Parse and report without scrobbling")
    scrobble.add_argument("--debug-response", action="store_true", help="Log raw API responses")
    scrobble.add_argument("--utc-timestamps", action="store_true",
                          help="Log timestamps are already UTC (default: player local time)")
    return parser


# -------------------------
# Commands
# -------------------------
def cmd_service(args) -> int:
    if args.service != "lastfm":
        raise ConfigError("Only lastfm needs API keys; librefm uses a fixed public pair.")
    config = load_config(args.config_path)
    config.set_service_keys(args.service, args.api_key, args.api_secret)
    save_config(config, args.config_path)
    log.info("Saved API keys for %s in %s", args.service, args.config_path)
    return 0


def prompt_password() -> str:
    password = getpass.getpass("Password: ")
    if password != getpass.getpass("Confirm password: "):
        raise ConfigError("Passwords do not match.")
    return password


def cmd_account(args) -> int:
    config = load_config(args.config_path)
    if args.account_command == "add":
        password = args.password if args.password is not None else prompt_password()
        config.add_account(args.service, args.username, password)
        save_config(config, args.config_path)
        log.info("Saved %s account for %s in %s", args.service, args.username, args.config_path)
    elif args.account_command == "remove":
        if not config.remove_account(args.service, args.username):
            raise ConfigError(f"No account found for {args.service} {args.username}")
        save_config(config, args.config_path)
        log.info("Removed %s account for %s", args.service, args.username)
    else:
        accounts = list(config.iter_accounts(args.service))
        if not accounts:
            raise ConfigError("No accounts configured.")
        for account in accounts:
            print(f"{account.service}\t{account.username}")
    return 0


def report_summary(report: RunReport, alerts) -> None:
    collected = report.collected
    for diag in collected.diagnostics:
        if diag.kind is DiagnosticKind.TRUNCATED_TAIL:
            log.info("%s: %s", diag.kind.value, diag.detail)
    unresolved = sum(d.kind is DiagnosticKind.UNRESOLVED_TRACK for d in collected.diagnostics)
    if unresolved:
        log.warning("Missing metadata for %d plays", unresolved)

    for alert in run_alerts(report):
        alerts.send(alert)


def cmd_scrobble(args) -> int:
    config = load_config(args.config_path)
    accounts = list(config.iter_accounts(args.service, args.username))
    if not accounts:
        raise ConfigError("No matching accounts configured.")

    playback_path = args.playback_log or os.path.join(args.rockbox_dir, "playback.log")
    if not os.path.isfile(playback_path):
        raise ConfigError(f"Missing playback log at {playback_path}")

    def client_factory(account):
        # missing keys only stop this account
        try:
            endpoint = config.endpoint(account.service)
        except ConfigError as e:
            raise AuthenticationFailed(str(e)) from e
        return ScrobbleClient(endpoint, account, timeout=HTTP_TIMEOUT,
                              max_attempts=MAX_ATTEMPTS, debug_responses=args.debug_response)

    alerts = alerts_from_env()
    try:
        scrobbler = Scrobbler(SubmissionStore(args.state_path), client_factory)
        with TagCache(args.rockbox_dir) as tagcache:
            report = scrobbler.run(
                PlaybackLog(playback_path, local_time=LOCAL_TIME and not args.utc_timestamps),
                tagcache,
                accounts,
                dry_run=args.dry_run,
                truncate=not args.no_truncate,
                remove_log=args.remove_log,
            )
    except (RockboxFormatError, OSError) as e:
        log.error("%s", e)
        alerts.send(Alert("ERROR", "Scrobble run failed", str(e)))
        return 1

    report_summary(report, alerts)
    if args.dry_run:
        log.info("Would scrobble %d tracks.", len(report.collected.candidates))
    return report.exit_code


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(debug_response=getattr(args, "debug_response", False))
    handlers = {"service": cmd_service, "account": cmd_account, "scrobble": cmd_scrobble}
    try:
        return handlers[args.command](args)
    except ConfigError as e:
        log.error("%s", e)
        return 2


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        log.info("Shutting down…")
        sys.exit(130)
