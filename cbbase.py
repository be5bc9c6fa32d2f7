#!/usr/bin/python3
"""
MIT License

Copyright (c) 2025 Cecilia Martin

Permission is hereby granted, free of charge, to any person obtaining a copy
of this software and associated documentation files (the "Software"), to deal
in the Software without restriction, including without limitation the rights
to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
copies of the Software, and to permit persons to whom the Software is
furnished to do so, subject to the following conditions:

The above copyright notice and this permission notice shall be included in all
copies or substantial portions of the Software.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
SOFTWARE.

Couchbase CLI base - credentials, couchbase-cli adapter and list output parsers
"""

from typing import TypedDict, List, Dict, Optional, Callable, Sequence
import logging
import re
import subprocess


class Creds(TypedDict):
    CBHOST: str
    CBUSER: str
    CBPASS: str


# Configure logging
logger = logging.getLogger(__name__)
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

REFERENCE_HEADER = re.compile(r"^cluster name: (?P<value>.*)$")
STREAM_HEADER = re.compile(r"^\s*stream id: (?P<value>.*)$")
STREAM_FIELD = re.compile(r"^\s*(?P<key>source|target): (?P<value>.*)$")
RECORD_FIELD = re.compile(r"^\s+(?P<key>[a-z][a-z ]*): (?P<value>.*)$")
SECRET_FLAGS = ("--password", "--xdcr-password")


class CliError(Exception):
    """The administrative executable could not be run"""


def create_credentials(host: str, user: str, password: str) -> Creds:
    """
    Create credentials dictionary for a cluster endpoint

    Args:
        host: Cluster hostname or IP (optionally with :port)
        user: Administrator username
        password: Administrator password

    Returns:
        Creds dictionary ready for Client initialization
    """
    return {
        "CBHOST": host,
        "CBUSER": user,
        "CBPASS": password,
    }


def parse_reference_list(text: str) -> List[Dict[str, str]]:
    """
    Parse `xdcr-setup --list` output into one dict per cluster reference.

    Each record opens with an unindented `cluster name: <name>` line and is
    followed by indented `key: value` metadata lines (uuid, host name, ...).
    Anything else (warnings, blank lines) is ignored.

    Examples:
        >>> parse_reference_list("cluster name: west\\n        uuid: 42\\n")
        [{'cluster name': 'west', 'uuid': '42'}]
    """
    records = []
    current = None
    for line in text.splitlines():
        header = REFERENCE_HEADER.match(line)
        if header:
            current = {"cluster name": header.group("value")}
            records.append(current)
            continue
        field = RECORD_FIELD.match(line)
        if field and current is not None:
            current[field.group("key").strip()] = field.group("value")
    return records


def parse_replication_list(text: str) -> List[Dict[str, str]]:
    """
    Parse `xdcr-replicate --list` output into one dict per replication stream.

    Records open with a `stream id: <id>` line; indented `status`, `source`,
    `target` and `filter` lines attach to the current record. A `source` or
    `target` line seen before any stream id opens a record of its own.
    """
    records = []
    current = None
    for line in text.splitlines():
        header = STREAM_HEADER.match(line)
        if header:
            current = {"stream id": header.group("value")}
            records.append(current)
            continue

        stream_field = STREAM_FIELD.match(line)
        if stream_field:
            key = stream_field.group("key")
            # Output without stream ids: a repeated key starts the next record
            if current is None or key in current:
                current = {}
                records.append(current)
            current[key] = stream_field.group("value")
            continue

        field = RECORD_FIELD.match(line)
        if field and current is not None:
            current[field.group("key").strip()] = field.group("value")
    return records


def options_to_flags(options: Sequence[str]) -> List[str]:
    """Turn pass-through `key=value` options into `--key=value` flags, order kept"""
    return [f"--{option.lstrip('-')}" for option in options]


class Client:
    """
    couchbase-cli wrapper bound to a single cluster endpoint.

    Every call blocks until the executable exits. Output is returned as text
    (stdout followed by stderr); the exit status is only logged since the CLI
    can report a failed operation with status 0.
    """

    def __init__(
        self,
        creds: Creds,
        cli_path: str = "couchbase-cli",
        runner: Optional[Callable[..., subprocess.CompletedProcess]] = None,
    ):
        self.creds = creds
        self.cli_path = cli_path
        self.runner = runner or subprocess.run

    @staticmethod
    def _masked(command: List[str]) -> str:
        masked = []
        for i, arg in enumerate(command):
            if i > 0 and command[i - 1] in SECRET_FLAGS:
                arg = "*****"
            masked.append(arg)
        return " ".join(masked)

    def run(self, subcommand: str, *args: str) -> str:
        command = [
            self.cli_path,
            subcommand,
            "--cluster",
            self.creds["CBHOST"],
            "--username",
            self.creds["CBUSER"],
            "--password",
            self.creds["CBPASS"],
            *args,
        ]
        logger.debug(f"Executing: {self._masked(command)}")
        try:
            result = self.runner(command, capture_output=True, text=True)
        except OSError as e:
            raise CliError(f"Unable to run {self.cli_path}: {e}") from e

        output = (result.stdout or "") + (result.stderr or "")
        if result.returncode != 0:
            logger.warning(
                f"{self.cli_path} {subcommand} on {self.creds['CBHOST']} exited with status {result.returncode}"
            )
        logger.debug(f"Output of {subcommand}:\n{output}")
        return output

    def cluster_ready(self) -> bool:
        """At least one node reports healthy and active membership"""
        output = self.run("server-list")
        for line in output.splitlines():
            fields = line.split()
            if len(fields) >= 4 and fields[2] == "healthy" and fields[3] == "active":
                return True
        return False

    def bucket_ready(self, bucket: str) -> bool:
        """Bucket names are the unindented lines of `bucket-list`"""
        output = self.run("bucket-list")
        return any(line == bucket for line in output.splitlines())

    def list_references(self) -> List[Dict[str, str]]:
        return parse_reference_list(self.run("xdcr-setup", "--list"))

    def create_reference(
        self, name: str, remote: Creds, extra_flags: Sequence[str] = ()
    ) -> str:
        return self.run(
            "xdcr-setup",
            "--create",
            "--xdcr-cluster-name",
            name,
            "--xdcr-hostname",
            remote["CBHOST"],
            "--xdcr-username",
            remote["CBUSER"],
            "--xdcr-password",
            remote["CBPASS"],
            *extra_flags,
        )

    def list_replications(self) -> List[Dict[str, str]]:
        return parse_replication_list(self.run("xdcr-replicate", "--list"))

    def create_replication(
        self,
        from_bucket: str,
        reference_name: str,
        to_bucket: str,
        extra_flags: Sequence[str] = (),
    ) -> str:
        return self.run(
            "xdcr-replicate",
            "--create",
            "--xdcr-cluster-name",
            reference_name,
            "--xdcr-from-bucket",
            from_bucket,
            "--xdcr-to-bucket",
            to_bucket,
            *extra_flags,
        )
