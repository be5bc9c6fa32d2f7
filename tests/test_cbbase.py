#!/usr/bin/env python3
"""
Tests for cbbase - couchbase-cli adapter and list output parsers

The real executable is never started: a fake runner stands in for
subprocess.run and answers with canned couchbase-cli output.
"""

import subprocess
import pytest
from typing import List

from cbbase import (
    Client,
    CliError,
    create_credentials,
    options_to_flags,
    parse_reference_list,
    parse_replication_list,
)


REFERENCE_LIST = """\
cluster name: west-2
        uuid: 0b1e4a6fd4d2a6d83b0c3fb5a8e1c3a2
   host name: 10.0.0.3:8091
   user name: Administrator
         uri: /pools/default/remoteClusters/west-2
cluster name: west
        uuid: 9f1c2b7e5a3d4c6b8e0f1a2b3c4d5e6f
   host name: 10.0.0.2:8091
   user name: Administrator
         uri: /pools/default/remoteClusters/west
"""

REPLICATION_LIST = """\
stream id: 9f1c2b7e5a3d4c6b8e0f1a2b3c4d5e6f/bucket-src/bucket-replica
   status: running
   source: bucket-src
   target: /remoteClusters/9f1c2b7e5a3d4c6b8e0f1a2b3c4d5e6f/buckets/bucket-replica
stream id: 9f1c2b7e5a3d4c6b8e0f1a2b3c4d5e6f/bucket-src/bucket-archive
   status: paused
   source: bucket-src
   target: /remoteClusters/9f1c2b7e5a3d4c6b8e0f1a2b3c4d5e6f/buckets/bucket-archive
   filter: ^order:
"""


class FakeRunner:
    """Stands in for subprocess.run and records every command"""

    def __init__(self, stdout: str = "", stderr: str = "", returncode: int = 0):
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = returncode
        self.commands: List[List[str]] = []

    def __call__(self, command, capture_output=False, text=False):
        self.commands.append(command)
        return subprocess.CompletedProcess(
            command, self.returncode, stdout=self.stdout, stderr=self.stderr
        )


def make_client(runner: FakeRunner) -> Client:
    creds = create_credentials("src.example.com:8091", "Administrator", "s3cret")
    return Client(creds, cli_path="/opt/couchbase/bin/couchbase-cli", runner=runner)


class TestParseReferenceList:
    """Tests for parse_reference_list"""

    def test_parses_every_record_with_metadata(self):
        """Test: each 'cluster name' line opens a record carrying its indented fields"""
        records = parse_reference_list(REFERENCE_LIST)

        assert [r["cluster name"] for r in records] == ["west-2", "west"]
        assert records[1]["host name"] == "10.0.0.2:8091"
        assert records[1]["uri"] == "/pools/default/remoteClusters/west"

    def test_empty_output_has_no_records(self):
        """Test: a cluster without references yields an empty list"""
        assert parse_reference_list("") == []

    def test_unrelated_lines_are_ignored(self):
        """Test: warnings and indented names do not open records"""
        text = (
            "WARNING: Couchbase Server is running an unsupported version\n"
            "   cluster name: not-a-record\n"
            "cluster name: west\n"
        )
        records = parse_reference_list(text)

        assert records == [{"cluster name": "west"}]

    def test_name_is_kept_verbatim(self):
        """Test: names are not trimmed or case-folded"""
        records = parse_reference_list("cluster name: West \n")

        assert records[0]["cluster name"] == "West "


class TestParseReplicationList:
    """Tests for parse_replication_list"""

    def test_parses_streams(self):
        """Test: stream records carry source, target, status and filter"""
        records = parse_replication_list(REPLICATION_LIST)

        assert len(records) == 2
        assert records[0]["source"] == "bucket-src"
        assert records[0]["target"].endswith("/buckets/bucket-replica")
        assert records[0]["status"] == "running"
        assert "filter" not in records[0]
        assert records[1]["filter"] == "^order:"

    def test_output_without_stream_ids(self):
        """Test: source/target pairs without headers still split into records"""
        text = (
            "   source: a\n"
            "   target: /remoteClusters/u/buckets/b\n"
            "   source: c\n"
            "   target: /remoteClusters/u/buckets/d\n"
        )
        records = parse_replication_list(text)

        assert records == [
            {"source": "a", "target": "/remoteClusters/u/buckets/b"},
            {"source": "c", "target": "/remoteClusters/u/buckets/d"},
        ]

    def test_empty_output_has_no_records(self):
        """Test: no replications yields an empty list"""
        assert parse_replication_list("\n") == []


class TestOptionsToFlags:
    """Tests for pass-through option conversion"""

    def test_key_value_becomes_long_flag(self):
        """Test: key=value becomes --key=value"""
        assert options_to_flags(["xdcr-encryption-type=half"]) == [
            "--xdcr-encryption-type=half"
        ]

    def test_leading_dashes_are_normalised_and_order_kept(self):
        """Test: user-supplied dashes are not doubled, order is preserved"""
        flags = options_to_flags(
            ["--filter-expression=^a", "xdcr-hostname-external", "-priority=Low"]
        )

        assert flags == [
            "--filter-expression=^a",
            "--xdcr-hostname-external",
            "--priority=Low",
        ]


class TestClientRun:
    """Tests for Client.run command composition and output handling"""

    def test_command_carries_endpoint_credentials(self):
        """Test: every call targets the endpoint with its credentials"""
        runner = FakeRunner()
        make_client(runner).run("server-list")

        assert runner.commands == [
            [
                "/opt/couchbase/bin/couchbase-cli",
                "server-list",
                "--cluster",
                "src.example.com:8091",
                "--username",
                "Administrator",
                "--password",
                "s3cret",
            ]
        ]

    def test_output_includes_stderr(self):
        """Test: stdout and stderr are both returned for diagnosis"""
        runner = FakeRunner(stdout="partial\n", stderr="ERROR: boom\n")

        output = make_client(runner).run("xdcr-setup", "--list")

        assert output == "partial\nERROR: boom\n"

    def test_nonzero_exit_still_returns_output(self):
        """Test: exit status does not raise, output decides"""
        runner = FakeRunner(stdout="ERROR: Bucket not found\n", returncode=1)

        output = make_client(runner).run("bucket-list")

        assert "Bucket not found" in output

    def test_missing_executable_raises_cli_error(self):
        """Test: an executable that cannot be started raises CliError"""

        def runner(command, capture_output=False, text=False):
            raise FileNotFoundError(2, "No such file or directory", command[0])

        client = make_client(runner)

        with pytest.raises(CliError) as exc_info:
            client.run("server-list")

        assert "couchbase-cli" in str(exc_info.value)

    def test_passwords_are_masked(self):
        """Test: logged command lines hide both local and remote passwords"""
        masked = Client._masked(
            [
                "couchbase-cli",
                "xdcr-setup",
                "--password",
                "s3cret",
                "--xdcr-password",
                "d3cret",
                "--xdcr-cluster-name",
                "west",
            ]
        )

        assert "s3cret" not in masked
        assert "d3cret" not in masked
        assert "west" in masked


class TestClientReadiness:
    """Tests for cluster_ready and bucket_ready"""

    def test_healthy_active_node_is_ready(self):
        """Test: a healthy active node makes the cluster ready"""
        runner = FakeRunner(stdout="ns_1@cb1 172.17.0.2:8091 healthy active\n")

        assert make_client(runner).cluster_ready() is True
        assert runner.commands[0][1] == "server-list"

    def test_warming_up_node_is_not_ready(self):
        """Test: a node still warming up is not ready"""
        runner = FakeRunner(stdout="ns_1@cb1 172.17.0.2:8091 warmup active\n")

        assert make_client(runner).cluster_ready() is False

    def test_connection_error_is_not_ready(self):
        """Test: an unreachable cluster is not ready"""
        runner = FakeRunner(
            stdout="ERROR: Unable to connect to host at http://src.example.com:8091\n",
            returncode=1,
        )

        assert make_client(runner).cluster_ready() is False

    def test_bucket_listed_is_ready(self):
        """Test: bucket is ready when bucket-list prints its name"""
        runner = FakeRunner(
            stdout="bucket-src\n bucketType: membase\n numReplicas: 1\n"
        )

        assert make_client(runner).bucket_ready("bucket-src") is True
        assert runner.commands[0][1] == "bucket-list"

    def test_bucket_prefix_is_not_ready(self):
        """Test: a bucket whose name only starts with the wanted name does not count"""
        runner = FakeRunner(stdout="bucket-src-old\n bucketType: membase\n")

        assert make_client(runner).bucket_ready("bucket-src") is False


class TestClientXdcr:
    """Tests for the xdcr-setup / xdcr-replicate wrappers"""

    def test_list_references_parses_output(self):
        """Test: list_references runs 'xdcr-setup --list' and parses it"""
        runner = FakeRunner(stdout=REFERENCE_LIST)

        references = make_client(runner).list_references()

        assert runner.commands[0][1] == "xdcr-setup"
        assert runner.commands[0][-1] == "--list"
        assert [r["cluster name"] for r in references] == ["west-2", "west"]

    def test_list_replications_parses_output(self):
        """Test: list_replications runs 'xdcr-replicate --list' and parses it"""
        runner = FakeRunner(stdout=REPLICATION_LIST)

        replications = make_client(runner).list_replications()

        assert runner.commands[0][1] == "xdcr-replicate"
        assert runner.commands[0][-1] == "--list"
        assert len(replications) == 2

    def test_create_reference_command(self):
        """Test: remote credentials and extra flags are appended in order"""
        runner = FakeRunner(stdout="SUCCESS: Cluster reference created\n")
        remote = create_credentials("dst.example.com:8091", "Administrator", "d3cret")

        output = make_client(runner).create_reference(
            "west", remote, ["--xdcr-encryption-type=half"]
        )

        assert output == "SUCCESS: Cluster reference created\n"
        assert runner.commands[0][8:] == [
            "--create",
            "--xdcr-cluster-name",
            "west",
            "--xdcr-hostname",
            "dst.example.com:8091",
            "--xdcr-username",
            "Administrator",
            "--xdcr-password",
            "d3cret",
            "--xdcr-encryption-type=half",
        ]

    def test_create_replication_command(self):
        """Test: bucket names and reference name are passed to xdcr-replicate"""
        runner = FakeRunner(stdout="SUCCESS: XDCR replication created\n")

        make_client(runner).create_replication(
            "bucket-src", "west", "bucket-replica", ["--filter-expression=^a"]
        )

        assert runner.commands[0][1] == "xdcr-replicate"
        assert runner.commands[0][8:] == [
            "--create",
            "--xdcr-cluster-name",
            "west",
            "--xdcr-from-bucket",
            "bucket-src",
            "--xdcr-to-bucket",
            "bucket-replica",
            "--filter-expression=^a",
        ]
