#!/usr/bin/env python3
"""
CRM Call Bridge Server
- Runs the device bridge for one CRM user as a long-lived process
- Reads native call-state events as lines ("<state> [number]") from stdin,
  so any native listener can pipe events in
- Places remote dial requests through a configurable shell command
  (e.g. termux-telephony-call {number})
"""

import argparse
import logging
import os
import shlex
import signal
import subprocess
import sys
import threading

from call_bridge import config
from call_bridge.call_session import DirectoryConfig
from call_bridge.device_bridge import DeviceBridge
from call_bridge.errors import PermissionDeniedError

SHUTTING_DOWN = threading.Event()

log = logging.getLogger('BridgeServer')


def setup_logging(log_dir: str = None, verbose: bool = False):
    """Configure root logging once: stdout plus an optional log file."""
    if logging.getLogger().handlers:
        return

    handlers = [logging.StreamHandler()]
    if log_dir:
        try:
            os.makedirs(log_dir, exist_ok=True)
            handlers.append(logging.FileHandler(os.path.join(log_dir, 'call_bridge.log')))
        except OSError as e:
            print(f"WARNING: cannot write logs to {log_dir}: {e}", file=sys.stderr)

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=config.LOG_FORMAT,
        datefmt=config.LOG_DATE_FORMAT,
        handlers=handlers
    )

    # Transport libraries are chatty at INFO
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('socketio').setLevel(logging.WARNING)
    logging.getLogger('engineio').setLevel(logging.WARNING)


class LineEventSource:
    """Native call-event source fed by "<state> [number]" lines from a stream."""

    def __init__(self, stream=None, logger=None):
        self.stream = stream or sys.stdin
        self.logger = logger or log
        self._stopped = threading.Event()
        self._thread = None

    def subscribe(self, callback):
        self._stopped.clear()
        self._thread = threading.Thread(
            target=self._read_loop,
            args=(callback,),
            name="NativeEventReader",
            daemon=True
        )
        self._thread.start()
        return self._stopped.set

    def _read_loop(self, callback):
        for line in self.stream:
            if self._stopped.is_set():
                break
            parts = line.strip().split(None, 1)
            if not parts:
                continue
            state = parts[0]
            number = parts[1].strip() if len(parts) > 1 else ''
            callback(state, number)
        self.logger.info("Native event stream closed")


class CommandCallControl:
    """Call-control collaborator that runs a shell command to place a call."""

    def __init__(self, command_template: str, timeout: float = 15, logger=None):
        self.command_template = command_template
        self.timeout = timeout
        self.logger = logger or log

    def dial(self, phone_number: str):
        command = shlex.split(self.command_template.format(number=shlex.quote(phone_number)))
        self.logger.info(f"Running dial command: {' '.join(command)}")
        subprocess.run(command, check=True, timeout=self.timeout, capture_output=True)


def signal_handler(signum, frame):
    """Handle shutdown signals"""
    log.warning(f"Shutdown signal {signum} received")
    SHUTTING_DOWN.set()


def build_parser():
    parser = argparse.ArgumentParser(description='CRM call recording bridge')
    parser.add_argument('--user-id', required=True, help='CRM user id to pair this device with')
    parser.add_argument('--token', default=os.environ.get('CALL_BRIDGE_TOKEN'),
                        help='CRM session token (default: $CALL_BRIDGE_TOKEN)')
    parser.add_argument('--server-url', default=config.SERVER_URL, help='CRM base URL')
    parser.add_argument('--watch-dir', action='append', default=[],
                        help='Recorder output directory to scan first (repeatable)')
    parser.add_argument('--storage-root', default=config.STORAGE_ROOT,
                        help='Device storage root for built-in recorder directories')
    parser.add_argument('--settle-delay', type=float, default=config.SETTLE_DELAY,
                        help='Seconds to wait after a call before scanning')
    parser.add_argument('--dial-command', default=None,
                        help='Command used to place remote dial requests, e.g. "termux-telephony-call {number}"')
    parser.add_argument('--log-dir', default=None, help=f'Also log to this directory (e.g. {config.LOG_DIR})')
    parser.add_argument('--verbose', action='store_true', help='Debug logging')
    return parser


def main(argv=None):
    """Main server entry point"""
    args = build_parser().parse_args(argv)
    setup_logging(args.log_dir, args.verbose)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    log.info("=" * 60)
    log.info("🚀 CRM Call Bridge Starting")
    log.info("=" * 60)

    bridge = DeviceBridge(
        event_source=LineEventSource(),
        call_control=CommandCallControl(args.dial_command) if args.dial_command else None,
        directories=DirectoryConfig.build(args.watch_dir, storage_root=args.storage_root),
        server_url=args.server_url,
        settle_delay=args.settle_delay,
    )

    try:
        bridge.init(args.user_id, token=args.token)
    except PermissionDeniedError as e:
        log.critical(f"❌ {e}")
        return 2

    try:
        while not SHUTTING_DOWN.wait(30):
            status = bridge.get_status()
            uploads = status['uploads']
            log.info(f"📊 Stats: Channel={'up' if status['channel_connected'] else 'down'}, "
                     f"Sessions={status['active_sessions']}, "
                     f"Uploaded={uploads.get('uploaded', 0)}, "
                     f"Failed={uploads.get('failed', 0)}")
    except Exception as e:
        log.critical(f"Fatal error: {e}", exc_info=True)
        return 1
    finally:
        bridge.shutdown()
        log.info("✅ Shutdown complete")

    return 0


if __name__ == "__main__":
    sys.exit(main())
