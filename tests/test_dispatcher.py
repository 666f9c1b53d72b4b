"""Tests for codesign_toolkit.dispatcher."""

from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest

from codesign_toolkit.air import AirPipeline
from codesign_toolkit.audit import AuditEmitter
from codesign_toolkit.config import TrackerSettings
from codesign_toolkit.dispatcher import SigningDispatcher
from codesign_toolkit.errors import (
    BackendFailure,
    CredentialError,
    InputNotFound,
    OutputNotWritable,
    SignatureInvalid,
    UnsupportedOperation,
    UnsupportedType,
)
from codesign_toolkit.models import (
    ArtifactType,
    JavaCredentials,
    Operation,
    Outcome,
    Pkcs12Credentials,
    WindowsCredentials,
)
from codesign_toolkit.timestamp import TimestampClient
from conftest import (
    TSA_URL,
    FakeRunner,
    RecordingAudit,
    RecordingHandler,
    rewrite_member,
)

WINDOWS = WindowsCredentials(certificate="cert.pfx", password="pw")


def _dispatcher(
    runner: FakeRunner,
    audit: AuditEmitter,
    transport: httpx.BaseTransport | None = None,
) -> SigningDispatcher:
    pipeline = AirPipeline(timestamp_client=TimestampClient(timeout=1.0, transport=transport))
    return SigningDispatcher(runner=runner, air_pipeline=pipeline, audit=audit)


@pytest.fixture()
def exe_file(tmp_path: Path) -> Path:
    path = tmp_path / "app.exe"
    path.write_bytes(b"MZ\x90\x00")
    return path


# ===========================================================================
# Validation
# ===========================================================================


class TestValidation:
    def test_missing_input(
        self, tmp_path: Path, fake_runner: FakeRunner, recording_audit: RecordingAudit
    ) -> None:
        dispatcher = _dispatcher(fake_runner, recording_audit)
        with pytest.raises(InputNotFound):
            dispatcher.execute(
                "sign", "windows", WINDOWS, str(tmp_path / "absent.exe"), str(tmp_path / "o.exe")
            )
        assert fake_runner.calls == []
        [record] = recording_audit.records
        assert record.outcome is Outcome.failure
        assert record.error_kind == "InputNotFound"
        assert record.artifact_type == "windows"

    def test_unsign_not_supported_for_java(
        self, tmp_path: Path, fake_runner: FakeRunner, recording_audit: RecordingAudit
    ) -> None:
        jar = tmp_path / "app.jar"
        jar.write_bytes(b"PK")
        dispatcher = _dispatcher(fake_runner, recording_audit)
        with pytest.raises(UnsupportedOperation):
            dispatcher.execute(
                Operation.unsign, ArtifactType.java, None, str(jar), str(tmp_path / "o.jar")
            )
        assert fake_runner.calls == []
        assert [r.error_kind for r in recording_audit.records] == ["UnsupportedOperation"]

    def test_unknown_type(
        self, exe_file: Path, fake_runner: FakeRunner, recording_audit: RecordingAudit
    ) -> None:
        dispatcher = _dispatcher(fake_runner, recording_audit)
        with pytest.raises(UnsupportedType, match="linux"):
            dispatcher.execute("verify", "linux", None, str(exe_file))
        [record] = recording_audit.records
        assert record.artifact_type == "linux"
        assert record.error_kind == "UnsupportedType"

    def test_type_inferred_from_extension(
        self, exe_file: Path, fake_runner: FakeRunner, recording_audit: RecordingAudit
    ) -> None:
        result = _dispatcher(fake_runner, recording_audit).execute(
            "verify", None, None, str(exe_file)
        )
        assert result.artifact_type is ArtifactType.windows
        assert fake_runner.calls == [["osslsigncode", "verify", "-in", str(exe_file)]]
        assert recording_audit.records[0].artifact_type == "windows"

    def test_inference_failure(
        self, tmp_path: Path, fake_runner: FakeRunner, recording_audit: RecordingAudit
    ) -> None:
        blob = tmp_path / "firmware.bin"
        blob.write_bytes(b"\x00")
        with pytest.raises(UnsupportedType):
            _dispatcher(fake_runner, recording_audit).execute("verify", None, None, str(blob))
        assert recording_audit.records[0].artifact_type == "unknown"

    def test_unknown_operation(
        self, exe_file: Path, fake_runner: FakeRunner, recording_audit: RecordingAudit
    ) -> None:
        with pytest.raises(UnsupportedOperation, match="notarize"):
            _dispatcher(fake_runner, recording_audit).execute(
                "notarize", "windows", None, str(exe_file)
            )
        assert recording_audit.records[0].operation == "notarize"

    def test_ticket_operations_are_not_dispatched(
        self, exe_file: Path, fake_runner: FakeRunner, recording_audit: RecordingAudit
    ) -> None:
        with pytest.raises(UnsupportedOperation):
            _dispatcher(fake_runner, recording_audit).execute(
                Operation.ticket_create, "windows", None, str(exe_file)
            )

    def test_output_directory_missing(
        self,
        tmp_path: Path,
        exe_file: Path,
        fake_runner: FakeRunner,
        recording_audit: RecordingAudit,
    ) -> None:
        with pytest.raises(OutputNotWritable):
            _dispatcher(fake_runner, recording_audit).execute(
                "sign", "windows", WINDOWS, str(exe_file), str(tmp_path / "nope" / "o.exe")
            )
        assert fake_runner.calls == []

    def test_output_required_for_sign(
        self, exe_file: Path, fake_runner: FakeRunner, recording_audit: RecordingAudit
    ) -> None:
        with pytest.raises(OutputNotWritable):
            _dispatcher(fake_runner, recording_audit).execute(
                "sign", "windows", WINDOWS, str(exe_file)
            )

    def test_wrong_credential_model(
        self,
        tmp_path: Path,
        exe_file: Path,
        fake_runner: FakeRunner,
        recording_audit: RecordingAudit,
    ) -> None:
        with pytest.raises(CredentialError, match="WindowsCredentials"):
            _dispatcher(fake_runner, recording_audit).execute(
                "sign",
                "windows",
                JavaCredentials(keystore="ks.jks", alias="a"),
                str(exe_file),
                str(tmp_path / "o.exe"),
            )
        assert recording_audit.records[0].error_kind == "CryptoFailure"

    @pytest.mark.parametrize(
        ("artifact_type", "suffix", "expected"),
        [
            ("java", "jar", "JavaCredentials"),
            ("apple", "pkg", "Pkcs12Credentials"),
            ("air", "air", "Pkcs12Credentials"),
        ],
    )
    def test_credential_model_per_type(
        self,
        tmp_path: Path,
        fake_runner: FakeRunner,
        recording_audit: RecordingAudit,
        artifact_type: str,
        suffix: str,
        expected: str,
    ) -> None:
        source = tmp_path / f"input.{suffix}"
        source.write_bytes(b"PK")
        with pytest.raises(CredentialError, match=expected):
            _dispatcher(fake_runner, recording_audit).execute(
                "sign", artifact_type, WINDOWS, str(source), str(tmp_path / f"o.{suffix}")
            )
        assert fake_runner.calls == []

    def test_sign_requires_credentials(
        self,
        tmp_path: Path,
        exe_file: Path,
        fake_runner: FakeRunner,
        recording_audit: RecordingAudit,
    ) -> None:
        with pytest.raises(CredentialError):
            _dispatcher(fake_runner, recording_audit).execute(
                "sign", "windows", None, str(exe_file), str(tmp_path / "o.exe")
            )


# ===========================================================================
# Pass-through backends
# ===========================================================================


class TestBackends:
    def test_windows_sign(
        self,
        tmp_path: Path,
        exe_file: Path,
        fake_runner: FakeRunner,
        recording_audit: RecordingAudit,
    ) -> None:
        output = tmp_path / "signed.exe"
        result = _dispatcher(fake_runner, recording_audit).execute(
            "sign", "windows", WINDOWS, str(exe_file), str(output), "http://tsa.test"
        )
        assert result.message == f"Signed windows file: {output}"
        assert result.invocation.argv[0] == "osslsigncode"
        assert len(fake_runner.calls) == 1

        [record] = recording_audit.records
        assert record.outcome is Outcome.success
        assert record.operation == "sign"
        assert record.output_path == str(output)
        assert record.error_kind is None

    def test_windows_unsign(
        self,
        tmp_path: Path,
        exe_file: Path,
        fake_runner: FakeRunner,
        recording_audit: RecordingAudit,
    ) -> None:
        output = tmp_path / "plain.exe"
        result = _dispatcher(fake_runner, recording_audit).execute(
            "unsign", "windows", None, str(exe_file), str(output)
        )
        assert fake_runner.calls[0][1] == "remove-signature"
        assert result.message == f"Signature removed: {output}"

    def test_backend_failure_is_audited(
        self, tmp_path: Path, exe_file: Path, recording_audit: RecordingAudit
    ) -> None:
        runner = FakeRunner(exit_code=1, output="Unable to load certificate")
        with pytest.raises(BackendFailure, match="Unable to load certificate"):
            _dispatcher(runner, recording_audit).execute(
                "sign", "windows", WINDOWS, str(exe_file), str(tmp_path / "o.exe")
            )
        [record] = recording_audit.records
        assert record.error_kind == "BackendFailure"
        assert "Unable to load certificate" in record.error_detail

    def test_verify_does_not_record_output(
        self,
        tmp_path: Path,
        exe_file: Path,
        fake_runner: FakeRunner,
        recording_audit: RecordingAudit,
    ) -> None:
        _dispatcher(fake_runner, recording_audit).execute(
            "verify", "windows", None, str(exe_file), str(tmp_path / "ignored.exe")
        )
        assert recording_audit.records[0].output_path is None

    def test_timestamp_check(self, exe_file: Path, recording_audit: RecordingAudit) -> None:
        runner = FakeRunner(output="Timestamp time: Mar 14 15:09:26 2026 GMT")
        result = _dispatcher(runner, recording_audit).execute(
            "timestamp", "windows", None, str(exe_file)
        )
        assert result.timestamp.present
        assert result.message == f"Timestamp found: {exe_file}"


# ===========================================================================
# AIR
# ===========================================================================


class TestAir:
    def test_sign_verify_timestamp(
        self,
        tmp_path: Path,
        air_package: Path,
        p12_credentials: Pkcs12Credentials,
        fake_runner: FakeRunner,
        recording_audit: RecordingAudit,
        tsa_transport: httpx.MockTransport,
    ) -> None:
        dispatcher = _dispatcher(fake_runner, recording_audit, tsa_transport)
        output = tmp_path / "signed.air"

        signed = dispatcher.execute(
            "sign", None, p12_credentials, str(air_package), str(output), TSA_URL
        )
        assert signed.message == f"Signed air file (timestamped): {output}"

        verified = dispatcher.execute("verify", "air", None, str(output))
        assert verified.verification.valid
        assert verified.verification.signer == "CN=Test Signer"

        stamped = dispatcher.execute("timestamp", "air", None, str(output))
        assert stamped.timestamp.present

        assert fake_runner.calls == []
        assert [r.operation for r in recording_audit.records] == ["sign", "verify", "timestamp"]
        assert all(r.outcome is Outcome.success for r in recording_audit.records)

    def test_tampered_package_fails_verification(
        self,
        tmp_path: Path,
        air_package: Path,
        p12_credentials: Pkcs12Credentials,
        fake_runner: FakeRunner,
        recording_audit: RecordingAudit,
    ) -> None:
        dispatcher = _dispatcher(fake_runner, recording_audit)
        signed = tmp_path / "signed.air"
        dispatcher.execute("sign", "air", p12_credentials, str(air_package), str(signed))
        tampered = rewrite_member(signed, tmp_path / "tampered.air", "main.swf", b"evil")

        with pytest.raises(SignatureInvalid) as excinfo:
            dispatcher.execute("verify", "air", None, str(tampered))
        assert not excinfo.value.result.valid
        assert recording_audit.records[-1].error_kind == "CryptoFailure"

    def test_air_unsign_not_supported(
        self,
        tmp_path: Path,
        air_package: Path,
        fake_runner: FakeRunner,
        recording_audit: RecordingAudit,
    ) -> None:
        with pytest.raises(UnsupportedOperation):
            _dispatcher(fake_runner, recording_audit).execute(
                "unsign", "air", None, str(air_package), str(tmp_path / "o.air")
            )


# ===========================================================================
# Audit delivery
# ===========================================================================


JIRA = TrackerSettings(url="https://jira.test", user="ci", token="t", project="SEC")


class TestAuditDelivery:
    def test_ticket_key_attached_to_result(self, exe_file: Path, fake_runner: FakeRunner) -> None:
        handler = RecordingHandler(lambda request: httpx.Response(201, json={"key": "SEC-42"}))
        audit = AuditEmitter.from_settings(JIRA, transport=httpx.MockTransport(handler))
        result = _dispatcher(fake_runner, audit).execute("verify", "windows", None, str(exe_file))

        assert result.ticket_key == "SEC-42"
        fields = json.loads(handler.requests[0].content)["fields"]
        assert fields["summary"] == "Code Signing Success: verify completed for windows"

    def test_tracker_outage_does_not_fail_operation(
        self, exe_file: Path, fake_runner: FakeRunner
    ) -> None:
        handler = RecordingHandler(lambda request: httpx.Response(500, text="down"))
        audit = AuditEmitter.from_settings(JIRA, transport=httpx.MockTransport(handler))
        result = _dispatcher(fake_runner, audit).execute("verify", "windows", None, str(exe_file))

        assert result.ticket_key is None
        assert len(handler.requests) == 1

    def test_failure_ticket_is_a_bug(self, tmp_path: Path, fake_runner: FakeRunner) -> None:
        handler = RecordingHandler(lambda request: httpx.Response(201, json={"key": "SEC-43"}))
        audit = AuditEmitter.from_settings(JIRA, transport=httpx.MockTransport(handler))
        with pytest.raises(InputNotFound):
            _dispatcher(fake_runner, audit).execute(
                "verify", "windows", None, str(tmp_path / "absent.exe")
            )
        fields = json.loads(handler.requests[0].content)["fields"]
        assert fields["issuetype"] == {"name": "Bug"}
        assert fields["priority"] == {"name": "High"}
