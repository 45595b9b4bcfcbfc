"""Tests for backend/verify_document.py — single-document CLI.

Covers:
  - --json output for a scored certificate
  - --text-only
  - unscored document types skip the registry
  - missing file exits non-zero
  - --type is checked against the known document types
"""

import json

import pytest
from unittest.mock import patch

import verify_document

EXTRACT = "lto_verify.pipeline.ingestion.extract_text"


@pytest.fixture
def pdf(tmp_path):
    path = tmp_path / "doc.pdf"
    path.write_bytes(b"%PDF-1.4 placeholder")
    return path


class TestVerifyDocumentCli:

    def test_json_output_for_insurance(self, pdf, insurance_text, capsys):
        with patch(EXTRACT, return_value=insurance_text):
            verify_document.run_pipeline(str(pdf), "insurance_cert", output_json=True)
        output = json.loads(capsys.readouterr().out)
        assert output["document_type"] == "insurance_cert"
        assert output["fields"]["policyNumber"] == "POL-2024-VALID001"
        assert output["registry"]["status"] == "VALID"
        assert set(output) >= {"fraud", "expiry", "decision"}
        assert output["decision"]["status"] in ("APPROVED", "PENDING")

    def test_owner_id_is_not_scored(self, pdf, license_text, capsys):
        with patch(EXTRACT, return_value=license_text):
            verify_document.run_pipeline(str(pdf), "owner_id", output_json=True)
        output = json.loads(capsys.readouterr().out)
        assert output["fields"]["idType"] == "drivers-license"
        assert "decision" not in output

    def test_text_only(self, pdf, capsys):
        with patch(EXTRACT, return_value="RAW TEXT"):
            verify_document.run_pipeline(str(pdf), "insurance_cert", text_only=True)
        assert capsys.readouterr().out.strip() == "RAW TEXT"

    def test_pretty_print_without_text(self, pdf, capsys):
        with patch(EXTRACT, return_value=""):
            verify_document.run_pipeline(str(pdf), "emission_cert")
        assert "No text could be extracted" in capsys.readouterr().out

    def test_missing_file(self, tmp_path):
        with pytest.raises(SystemExit) as exc:
            verify_document.run_pipeline(str(tmp_path / "missing.pdf"), "insurance_cert")
        assert exc.value.code == 1

    def test_unknown_type_is_rejected(self, pdf, capsys):
        argv = ["verify_document.py", str(pdf), "--type", "passport"]
        with patch("sys.argv", argv), patch.object(verify_document, "run_pipeline") as run:
            with pytest.raises(SystemExit) as exc:
                verify_document.main()
        assert exc.value.code == 2
        assert "unknown document type 'passport'" in capsys.readouterr().err
        run.assert_not_called()

    def test_known_type_reaches_pipeline(self, pdf):
        argv = ["verify_document.py", str(pdf), "--type", "emission_cert", "--json"]
        with patch("sys.argv", argv), patch.object(verify_document, "run_pipeline") as run:
            verify_document.main()
        run.assert_called_once_with(
            str(pdf), "emission_cert", mime_type=None, trace=False, output_json=True, text_only=False,
        )
