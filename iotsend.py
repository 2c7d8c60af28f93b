#!/usr/bin/env python3
"""
iotsend - send a single IoT message to the hub service.

An IoT message is a list of message properties followed by a binary or
ASCII payload. The properties are key/value pairs, one per line, with a
blank line ending the block:

    key-1:value-1
    key-2:value-2

The payload is read from the named file, or from standard input when no
file is given.
"""

import argparse
import contextlib
import logging
import os
import signal
import sys
from dataclasses import dataclass
from typing import BinaryIO, Iterator, List, Optional

from config import IoTSendConfig
from iot_client import IoTClient, SendResult

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = "source:iotsend\n\n"

# Short options that take no value
SWITCHES = "vh"

USAGE = (
    "usage: {prog} [-v] [-h] [-H headers] [<filename>]\n"
    " [-h] : display this help\n"
    " [-H headers] : message headers as key:value pairs separated by ;\n"
    " [-v] : verbose output\n"
)


class PayloadUnavailable(OSError):
    """The named payload file could not be opened"""


@dataclass
class InvocationState:
    """Everything one run of iotsend needs to know"""

    verbose: bool = False
    payload_source: Optional[str] = None
    raw_headers: Optional[str] = None
    show_help: bool = False


def usage(prog: str = "iotsend"):
    """Write the usage text to stderr"""
    print(USAGE.format(prog=prog), end="", file=sys.stderr)


def _clean_argv(argv: List[str]) -> List[str]:
    """Rewrite short option groups so argparse never rejects them.

    Unknown letters are dropped from groups such as -vx, and the -H
    value is taken from the rest of the group or the next argument.
    A value starting with "-" is attached to the flag (-H-k:v) so it
    is not mistaken for another option.
    """
    cleaned = []
    args = iter(argv)
    for arg in args:
        if arg == "--":
            cleaned.append(arg)
            cleaned.extend(args)
            break
        if not arg.startswith("-") or arg == "-" or arg.startswith("--"):
            cleaned.append(arg)
            continue

        switches = ""
        headers = None
        letters = arg[1:]
        for i, letter in enumerate(letters):
            if letter in SWITCHES:
                switches += letter
            elif letter == "H":
                headers = letters[i + 1:] or next(args, None)
                break

        if switches:
            cleaned.append("-" + switches)
        if headers is not None:
            cleaned.extend(["-H" + headers] if headers.startswith("-") else ["-H", headers])
    return cleaned


def process_options(argv: List[str], prog: str = "iotsend") -> InvocationState:
    """Build the InvocationState from the command line arguments.

    Unrecognized options are ignored and only the first positional
    argument is taken as the payload file name.
    """
    parser = argparse.ArgumentParser(prog=prog, add_help=False)
    parser.add_argument("-v", dest="verbose", action="store_true")
    parser.add_argument("-H", dest="headers")
    parser.add_argument("-h", dest="help", action="store_true")
    parser.add_argument("filename", nargs="?")
    args, _ = parser.parse_known_args(_clean_argv(argv))

    if args.help:
        usage(prog)

    return InvocationState(
        verbose=args.verbose,
        payload_source=args.filename,
        raw_headers=args.headers,
        show_help=args.help,
    )


def normalize_headers(raw_headers: Optional[str]) -> str:
    """Turn "k1:v1;k2:v2" into the "k1:v1\\nk2:v2\\n\\n" header block"""
    if raw_headers is None:
        return DEFAULT_HEADERS

    pairs = [pair for pair in raw_headers.split(";") if pair.strip("\r\n")]
    if not pairs:
        return DEFAULT_HEADERS

    return "\n".join(pair.strip("\r\n") for pair in pairs) + "\n\n"


@contextlib.contextmanager
def open_payload(path: Optional[str], max_size: int) -> Iterator[BinaryIO]:
    """Yield the readable payload source for a run.

    Standard input is used when no path is given and is left open.
    A named file larger than max_size only produces a warning; the
    transport truncates it.
    """
    if path is None:
        yield sys.stdin.buffer
        return

    try:
        size = os.stat(path).st_size
    except OSError:
        size = None

    if size is not None and size > max_size:
        print("Warning: Max file size exceeded\nFile will be truncated!", file=sys.stderr)

    try:
        source = open(path, "rb")
    except OSError as e:
        raise PayloadUnavailable(e.errno, e.strerror, path) from e

    with source:
        yield source


def send_message(state: InvocationState, client: IoTClient,
                 config: IoTSendConfig = None) -> SendResult:
    """Compose the message described by state and stream it through client"""
    config = config or client.config
    headers = normalize_headers(state.raw_headers)
    logger.debug(f"Message headers: {headers!r}")

    try:
        with open_payload(state.payload_source, config.MAX_MESSAGE_SIZE) as source:
            return client.stream(headers, source)
    except PayloadUnavailable as e:
        logger.debug(f"Cannot open payload file: {e}")
        print("File not found", file=sys.stderr)
        return SendResult.SOURCE_UNAVAILABLE


def _termination_handler(signum, frame):
    logger.warning(f"Abnormal termination of iotsend (signal {signum})")
    sys.exit(1)


def setup_termination_handler():
    """Exit immediately on SIGINT, SIGTERM and SIGHUP"""
    for name in ("SIGINT", "SIGTERM", "SIGHUP"):
        signum = getattr(signal, name, None)
        if signum is not None:
            signal.signal(signum, _termination_handler)


def main(argv: Optional[List[str]] = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    state = process_options(argv)

    logging.basicConfig(
        level=logging.DEBUG if state.verbose else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if state.show_help:
        return 0

    setup_termination_handler()

    config = IoTSendConfig()
    client = IoTClient(config)
    try:
        client.set_verbose(state.verbose)
        if not client.connect():
            print(f"Unable to connect to IoT hub at {config.BROKER_HOST}:{config.BROKER_PORT}",
                  file=sys.stderr)
            return 1

        result = send_message(state, client, config)
        logger.debug(f"Transport stats: {client.get_stats()}")
    finally:
        client.close()

    if not result.ok:
        logger.error(f"Message not sent: {result.value}")
        return 1

    return 0


def run():
    sys.exit(main())


if __name__ == "__main__":
    run()
