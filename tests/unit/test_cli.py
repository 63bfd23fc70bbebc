"""Tests for the ``audit-verifier`` command line."""

from __future__ import annotations

import asyncio
import json
import zipfile
from pathlib import Path

import pytest

from audit_chain import cli
from audit_chain.core.crypto.events import EventFields
from audit_chain.core.crypto.verification import VerificationCancelled
from audit_chain.modules.audit.store import InMemoryAuditLog
from audit_chain.modules.export.service import BundleExporter, ExportDocument


def _write_log(path: Path, events) -> Path:
    path.write_bytes(b"".join(audit_event.to_jsonl_line() for audit_event in events))
    return path


class TestVerifyChain:
    def test_valid_log(
        self, tmp_path: Path, make_chain, capsys: pytest.CaptureFixture[str]
    ) -> None:
        events = make_chain(3)
        log = _write_log(tmp_path / "audit.jsonl", events)
        argv = ["verify-chain", "--input", str(log), "--head-hash", events[-1].event_hash]
        code = cli.main(argv)
        assert code == cli.EXIT_OK
        assert f"chain verified: 3 events, head {events[-1].event_hash}" in capsys.readouterr().out

    def test_tampered_log(
        self, tmp_path: Path, make_chain, capsys: pytest.CaptureFixture[str]
    ) -> None:
        log = _write_log(tmp_path / "audit.jsonl", make_chain(3))
        log.write_bytes(log.read_bytes().replace(b'"x":2', b'"x":9'))
        assert cli.main(["verify-chain", "--input", str(log)]) == cli.EXIT_REJECTED
        out = capsys.readouterr().out
        assert "hash mismatch" in out
        assert out.rstrip().endswith("chain FAILED")

    def test_head_mismatch(self, tmp_path: Path, make_chain) -> None:
        log = _write_log(tmp_path / "audit.jsonl", make_chain(2))
        code = cli.main(["verify-chain", "--input", str(log), "--head-hash", "d" * 64])
        assert code == cli.EXIT_REJECTED

    def test_empty_log(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        log = tmp_path / "audit.jsonl"
        log.write_bytes(b"")
        assert cli.main(["verify-chain", "--input", str(log)]) == cli.EXIT_EMPTY
        assert "audit log is empty" in capsys.readouterr().out

    def test_json_output(
        self, tmp_path: Path, make_chain, capsys: pytest.CaptureFixture[str]
    ) -> None:
        log = _write_log(tmp_path / "audit.jsonl", make_chain(2))
        assert cli.main(["verify-chain", "--input", str(log), "--json"]) == cli.EXIT_OK
        data = json.loads(capsys.readouterr().out)
        assert data["outcome"] == "verified"
        assert data["verified_count"] == 2

    def test_missing_file(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        code = cli.main(["verify-chain", "--input", str(tmp_path / "missing.jsonl")])
        assert code == cli.EXIT_USAGE
        assert "error:" in capsys.readouterr().err

    def test_timeout(
        self,
        tmp_path: Path,
        make_chain,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        log = _write_log(tmp_path / "audit.jsonl", make_chain(2))

        def cancelled(*_args: object, **_kwargs: object) -> None:
            raise VerificationCancelled(1)

        monkeypatch.setattr(cli, "verify_log_file", cancelled)
        code = cli.main(["verify-chain", "--input", str(log), "--timeout", "5"])
        assert code == cli.EXIT_CANCELLED
        assert "timed out after 1 events" in capsys.readouterr().err

    def test_invalid_head_hash_is_usage_error(self, tmp_path: Path) -> None:
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["verify-chain", "--input", str(tmp_path / "a"), "--head-hash", "XYZ"])
        assert exc_info.value.code == cli.EXIT_USAGE


@pytest.fixture
def bundle_dir(tmp_path: Path) -> Path:
    async def build() -> Path:
        log = InMemoryAuditLog()
        await log.append(
            EventFields.new(actor_principal_id="actor-1", action="export", tier="red", payload={}),
            await log.tail_hash(),
        )
        result = await BundleExporter(log, tmp_path / "exports").export(
            case_id="case-9",
            case_type="emergency_pack",
            documents=[ExportDocument("will", "doc-1", "text/plain", "Will", b"content")],
        )
        return result.bundle_dir

    return asyncio.run(build())


class TestVerifyBundle:
    def test_accepted(self, bundle_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert cli.main(["verify-bundle", "--bundle", str(bundle_dir)]) == cli.EXIT_OK
        assert capsys.readouterr().out.rstrip().endswith("bundle ACCEPTED")

    def test_zip_accepted(self, bundle_dir: Path) -> None:
        zip_path = bundle_dir.with_suffix(".zip")
        assert zip_path.is_file()
        assert cli.main(["verify-bundle", "--bundle", str(zip_path)]) == cli.EXIT_OK

    def test_tampered_document(self, bundle_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        (bundle_dir / "documents" / "doc-1").write_bytes(b"Content")
        assert cli.main(["verify-bundle", "--bundle", str(bundle_dir)]) == cli.EXIT_REJECTED
        out = capsys.readouterr().out
        assert "checksum_mismatch" in out
        assert "slot will" in out
        assert out.rstrip().endswith("bundle REJECTED")

    def test_wrong_head_hash(self, bundle_dir: Path) -> None:
        code = cli.main(["verify-bundle", "--bundle", str(bundle_dir), "--head-hash", "0" * 64])
        assert code == cli.EXIT_REJECTED

    def test_json_report(self, bundle_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert cli.main(["verify-bundle", "--bundle", str(bundle_dir), "--json"]) == cli.EXIT_OK
        report = json.loads(capsys.readouterr().out)
        assert report["accepted"] is True
        assert report["chain"]["verified_count"] == 1

    def test_missing_bundle(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert cli.main(["verify-bundle", "--bundle", str(tmp_path / "nope")]) == cli.EXIT_USAGE
        assert "Bundle not found" in capsys.readouterr().err

    def test_malformed_manifest(self, bundle_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        (bundle_dir / "manifest.json").write_bytes(b"{broken")
        assert cli.main(["verify-bundle", "--bundle", str(bundle_dir)]) == cli.EXIT_USAGE
        assert "Invalid manifest JSON" in capsys.readouterr().err

    def test_corrupt_zip_entry_rejected(
        self, bundle_dir: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        archive = tmp_path / "stored.zip"
        with zipfile.ZipFile(archive, "w", compression=zipfile.ZIP_STORED) as bundle_zip:
            for path in sorted(bundle_dir.rglob("*")):
                if path.is_file():
                    bundle_zip.write(path, path.relative_to(bundle_dir).as_posix())
        archive.write_bytes(archive.read_bytes().replace(b"content", b"Content"))

        assert cli.main(["verify-bundle", "--bundle", str(archive)]) == cli.EXIT_REJECTED
        out = capsys.readouterr().out
        assert "could not be read" in out
        assert out.rstrip().endswith("bundle REJECTED")
