#!/usr/bin/env python3
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

Wait for two Couchbase clusters, then create the XDCR cluster reference and
bucket replication between them if they do not exist yet
"""

import argparse
import logging
import sys
import time
from dataclasses import dataclass
from functools import partial
from typing import List, Dict, Optional, Any, Callable, Sequence, Tuple
from cbbase import Client, Creds, CliError, create_credentials, options_to_flags
from cbutils import display_table, export_csv

logger = logging.getLogger(__name__)
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

REFERENCE_CREATED = "SUCCESS: Cluster reference created"
REPLICATION_CREATED = "SUCCESS: XDCR replication created"

# argparse dest -> flag, in the order they are reported when missing
REQUIRED_OPTIONS = {
    "src_cluster_host": "--src-cluster-host",
    "src_cluster_username": "--src-cluster-username",
    "src_cluster_password": "--src-cluster-password",
    "src_cluster_bucket_name": "--src-cluster-bucket-name",
    "dest_cluster_host": "--dest-cluster-host",
    "dest_cluster_username": "--dest-cluster-username",
    "dest_cluster_password": "--dest-cluster-password",
    "dest_cluster_bucket_name": "--dest-cluster-bucket-name",
    "dest_cluster_name": "--dest-cluster-name",
}


class XdcrError(Exception):
    """Fatal error while setting up replication"""


class ReadinessTimeout(XdcrError):
    pass


class VerificationFailure(XdcrError):
    """A create call finished without printing its success marker"""

    def __init__(self, message: str, output: str) -> None:
        super().__init__(message)
        self.output = output


class MissingArgument(ValueError):
    pass


@dataclass(frozen=True)
class SetupConfig:
    src: Creds
    dst: Creds
    src_bucket: str
    dst_bucket: str
    dst_cluster_name: str
    setup_args: Tuple[str, ...] = ()
    replicate_args: Tuple[str, ...] = ()
    wait_timeout: float = 300.0
    wait_interval: float = 5.0
    cli_path: str = "couchbase-cli"
    summary: bool = False
    csv: Optional[str] = None


@dataclass
class SetupResult:
    reference_created: bool = False
    replication_created: bool = False


class ReadinessGate:
    """
    Block until a cluster or bucket reports ready, polling at a fixed interval.

    Args:
        timeout: Seconds to wait before giving up with ReadinessTimeout
        interval: Seconds between polls
        sleep: Sleep function (injectable for tests)
        clock: Monotonic clock function (injectable for tests)
    """

    def __init__(
        self,
        timeout: float = 300.0,
        interval: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timeout = timeout
        self.interval = interval
        self.sleep = sleep
        self.clock = clock

    def _wait(self, check: Callable[[], bool], what: str) -> None:
        deadline = self.clock() + self.timeout
        while not check():
            if self.clock() >= deadline:
                raise ReadinessTimeout(
                    f"Timed out after {self.timeout:g}s waiting for {what}"
                )
            logger.info(f"Waiting for {what}...")
            self.sleep(self.interval)
        logger.info(f"{what} is ready")

    def await_cluster_ready(self, client: Client) -> None:
        self._wait(client.cluster_ready, f"cluster {client.creds['CBHOST']}")

    def await_bucket_ready(self, client: Client, bucket: str) -> None:
        self._wait(
            lambda: client.bucket_ready(bucket),
            f"bucket {bucket} on {client.creds['CBHOST']}",
        )


class ReplicationManager:
    def __init__(self, client: Client) -> None:
        self.client = client
        self.created_references = []
        self.created_replications = []

    @staticmethod
    def reference_exists(references: List[Dict[str, str]], name: str) -> bool:
        """Exact, case-sensitive match on the reference name"""
        return any(ref.get("cluster name") == name for ref in references)

    @staticmethod
    def replication_exists(
        replications: List[Dict[str, str]], src_bucket: str, dst_bucket: str
    ) -> bool:
        """
        Match a stream by source bucket and by the last segment of its target.

        The target path carries the remote cluster uuid, which is unknown
        before the reference exists, so only its bucket suffix is compared.
        """
        return any(
            stream.get("source") == src_bucket
            and stream.get("target", "").endswith(f"/{dst_bucket}")
            for stream in replications
        )

    def ensure_cluster_reference(
        self, name: str, remote: Creds, extra_options: Sequence[str] = ()
    ) -> bool:
        """
        Create the cluster reference `name` pointing at `remote` unless present.

        Args:
            name: Reference name, unique per source cluster
            remote: Destination cluster credentials
            extra_options: `key=value` strings passed through as extra flags

        Returns:
            True if the reference was created, False if it already existed

        Raises:
            VerificationFailure: create output lacks the success marker
        """
        if self.reference_exists(self.client.list_references(), name):
            logger.info(f"Cluster reference {name} already exists. Skipping.")
            return False

        logger.info(f"Creating cluster reference {name} to {remote['CBHOST']}")
        output = self.client.create_reference(
            name, remote, options_to_flags(extra_options)
        )
        if REFERENCE_CREATED not in output:
            raise VerificationFailure(
                f"Failed to create cluster reference {name}", output
            )

        logger.info(f"Created cluster reference {name}")
        self.created_references.append(name)
        return True

    def ensure_replication(
        self,
        src_bucket: str,
        reference_name: str,
        dst_bucket: str,
        extra_options: Sequence[str] = (),
    ) -> bool:
        """
        Start replicating `src_bucket` into `dst_bucket` unless a stream exists.

        Returns:
            True if the replication was created, False if it already existed

        Raises:
            VerificationFailure: create output lacks the success marker
        """
        if self.replication_exists(
            self.client.list_replications(), src_bucket, dst_bucket
        ):
            logger.info(
                f"Replication {src_bucket} -> {dst_bucket} already exists. Skipping."
            )
            return False

        logger.info(
            f"Creating replication {src_bucket} -> {reference_name}/{dst_bucket}"
        )
        output = self.client.create_replication(
            src_bucket, reference_name, dst_bucket, options_to_flags(extra_options)
        )
        if REPLICATION_CREATED not in output:
            raise VerificationFailure(
                f"Failed to create replication {src_bucket} -> {dst_bucket}", output
            )

        logger.info(f"Created replication {src_bucket} -> {dst_bucket}")
        self.created_replications.append((src_bucket, reference_name, dst_bucket))
        return True

    def get_source_info(self) -> Dict[str, Any]:
        """References and replication streams currently defined on the source cluster"""
        return {
            "references": self.client.list_references(),
            "replications": self.client.list_replications(),
        }

    def display_status(self, output=None) -> None:
        if output is None:
            output = sys.stdout
        info = self.get_source_info()
        display_table(
            info["references"],
            columns=["cluster name", "host name", "user name", "uuid"],
            output=output,
            title="Cluster References",
        )
        output.write("\n")
        display_table(
            info["replications"],
            columns=["stream id", "status", "source", "target", "filter"],
            output=output,
            title="Replications",
        )

    def save_to_csv(self, filepath: str) -> None:
        """Write references and replications to one CSV, tagged by a `kind` column"""
        info = self.get_source_info()
        rows = [{"kind": "reference", **ref} for ref in info["references"]]
        rows += [{"kind": "replication", **rep} for rep in info["replications"]]

        with open(filepath, "w", newline="") as csvfile:
            export_csv(rows, csvfile)

        logger.info(f"Saved XDCR status to CSV: {filepath}")


class SetupArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that exits with status 1 on usage errors"""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = SetupArgumentParser(
        prog="xdcr-setup",
        description="Create an XDCR cluster reference and bucket replication between two Couchbase clusters",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Replicate bucket 'orders' into 'orders-replica' on the west cluster
  python3 xdcr.py --src-cluster-host east:8091 --src-cluster-username admin \\
    --src-cluster-password pass --src-cluster-bucket-name orders \\
    --dest-cluster-host west:8091 --dest-cluster-username admin \\
    --dest-cluster-password pass --dest-cluster-bucket-name orders-replica \\
    --dest-cluster-name west

  # Same, with half encryption on the reference and a replication filter
  python3 xdcr.py ... --setup-arg xdcr-encryption-type=half \\
    --replicate-arg filter-expression=^order:

  # Print references and replications afterwards and save them to CSV
  python3 xdcr.py ... --summary --csv xdcr_status.csv
        """,
    )
    # Source cluster connection
    parser.add_argument("--src-cluster-host", help="Source cluster host[:port]")
    parser.add_argument("--src-cluster-username", help="Source cluster username")
    parser.add_argument("--src-cluster-password", help="Source cluster password")
    parser.add_argument(
        "--src-cluster-bucket-name", help="Bucket to replicate data from"
    )
    # Destination cluster connection
    parser.add_argument("--dest-cluster-host", help="Destination cluster host[:port]")
    parser.add_argument(
        "--dest-cluster-username", help="Destination cluster username"
    )
    parser.add_argument(
        "--dest-cluster-password", help="Destination cluster password"
    )
    parser.add_argument(
        "--dest-cluster-bucket-name", help="Bucket to replicate data to"
    )
    parser.add_argument(
        "--dest-cluster-name",
        help="Name of the cluster reference registered on the source cluster",
    )
    # Pass-through options
    parser.add_argument(
        "--setup-arg",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Extra flag for 'xdcr-setup --create', e.g. xdcr-encryption-type=half (repeatable)",
    )
    parser.add_argument(
        "--replicate-arg",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Extra flag for 'xdcr-replicate --create', e.g. filter-expression=^a (repeatable)",
    )
    # Readiness polling
    parser.add_argument(
        "--wait-timeout",
        type=float,
        default=300.0,
        help="Seconds to wait for clusters and buckets to become ready (default: 300)",
    )
    parser.add_argument(
        "--wait-interval",
        type=float,
        default=5.0,
        help="Seconds between readiness checks (default: 5)",
    )
    parser.add_argument(
        "--couchbase-cli",
        default="couchbase-cli",
        metavar="PATH",
        help="couchbase-cli executable (default: couchbase-cli on PATH)",
    )
    # Reporting
    parser.add_argument(
        "--summary",
        action="store_true",
        help="Print cluster references and replications of the source cluster when done",
    )
    parser.add_argument(
        "--csv",
        metavar="FILEPATH",
        help="Save cluster references and replications of the source cluster to CSV when done",
    )
    return parser


def validate_args(args) -> SetupConfig:
    """
    Validate parsed arguments and freeze them into a SetupConfig.

    Raises:
        MissingArgument: If any required option is missing
        ValueError: If the readiness timings are not usable
    """
    missing = [flag for dest, flag in REQUIRED_OPTIONS.items() if not getattr(args, dest)]
    if missing:
        raise MissingArgument(f"Missing required option(s): {', '.join(missing)}")

    if args.wait_timeout < 0:
        raise ValueError("--wait-timeout must not be negative")
    if args.wait_interval <= 0:
        raise ValueError("--wait-interval must be greater than zero")

    return SetupConfig(
        src=create_credentials(
            args.src_cluster_host, args.src_cluster_username, args.src_cluster_password
        ),
        dst=create_credentials(
            args.dest_cluster_host,
            args.dest_cluster_username,
            args.dest_cluster_password,
        ),
        src_bucket=args.src_cluster_bucket_name,
        dst_bucket=args.dest_cluster_bucket_name,
        dst_cluster_name=args.dest_cluster_name,
        setup_args=tuple(args.setup_arg),
        replicate_args=tuple(args.replicate_arg),
        wait_timeout=args.wait_timeout,
        wait_interval=args.wait_interval,
        cli_path=args.couchbase_cli,
        summary=args.summary,
        csv=args.csv,
    )


def run_setup(
    config: SetupConfig,
    client_factory: Optional[Callable[[Creds], Client]] = None,
    gate: Optional[ReadinessGate] = None,
) -> SetupResult:
    """
    Wait for readiness, then reconcile the cluster reference and the replication.

    Any exception ends the run; nothing is created before both clusters and
    both buckets are ready.
    """
    if client_factory is None:
        client_factory = partial(Client, cli_path=config.cli_path)
    if gate is None:
        gate = ReadinessGate(timeout=config.wait_timeout, interval=config.wait_interval)

    src_client = client_factory(config.src)
    dst_client = client_factory(config.dst)

    gate.await_cluster_ready(src_client)
    gate.await_cluster_ready(dst_client)
    gate.await_bucket_ready(src_client, config.src_bucket)
    gate.await_bucket_ready(dst_client, config.dst_bucket)

    rm = ReplicationManager(src_client)
    result = SetupResult()
    result.reference_created = rm.ensure_cluster_reference(
        config.dst_cluster_name, config.dst, config.setup_args
    )
    result.replication_created = rm.ensure_replication(
        config.src_bucket,
        config.dst_cluster_name,
        config.dst_bucket,
        config.replicate_args,
    )

    if config.summary:
        rm.display_status()
    if config.csv:
        rm.save_to_csv(config.csv)

    return result


def main(argv=None, client_factory=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = validate_args(args)
    except ValueError as e:
        logger.error(str(e))
        parser.print_usage(sys.stderr)
        sys.exit(1)

    try:
        result = run_setup(config, client_factory=client_factory)
    except VerificationFailure as e:
        logger.error(f"{e}. Output was:\n{e.output}")
        sys.exit(1)
    except (XdcrError, CliError) as e:
        logger.error(str(e))
        sys.exit(1)

    logger.info(
        f"XDCR setup complete (reference created: {result.reference_created}, "
        f"replication created: {result.replication_created})"
    )


if __name__ == "__main__":
    main()
