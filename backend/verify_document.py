#!/usr/bin/env python3
"""CLI tool to run the verification pipeline on a single document file.

Usage:
    python verify_document.py <file> --type insurance_cert          # Extract, parse, score
    python verify_document.py <file> --type emission_cert --trace   # Run with LTO_TRACE
    python verify_document.py <file> --type owner_id --json         # Output raw JSON
    python verify_document.py <file> --text-only                    # Dump extracted text

Insurance and emission certificates are also checked against the
configured registry (the seeded in-process registry unless
INSURANCE_REGISTRY_URL / EMISSION_REGISTRY_URL are set), scored for fraud
and run through the decision engine.  Nothing is persisted.

Examples:
    python verify_document.py temp/uploads/ctpl.pdf --type insurance_cert
    python verify_document.py scans/license.jpg --type owner_id --mime image/jpeg
"""

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

# Ensure the backend package is importable
sys.path.insert(0, str(Path(__file__).resolve().parent))

# document_type -> verification category for the types the decision engine handles
SCORED_TYPES = {
    "insurance_cert": "insurance",
    "emission_cert": "emission",
}


async def _score(category: str, fields):
    """Registry lookup, fraud analysis, expiry and decision for one parsed certificate."""
    from lto_verify.errors import RegistryLookupError
    from lto_verify.pipeline.fraud import analyze
    from lto_verify.pipeline.models import RecordMatchResult
    from lto_verify.pipeline.registries import (
        build_emission_registry,
        build_insurance_registry,
        lookup_with_timeout,
    )
    from lto_verify.pipeline.verification import check_expiry, decide
    from lto_verify.config import REGISTRY_LOOKUP_TIMEOUT, AutoVerificationConfig

    registry = build_insurance_registry() if category == "insurance" else build_emission_registry()
    claim = {
        "plateNumber": fields.get("plateNumber"),
        "engineNumber": fields.get("engineNumber"),
        "chassisNumber": fields.first("chassisNumber", "vin"),
        "vin": fields.get("vin"),
        "policyNumber": fields.first("insurancePolicyNumber", "policyNumber"),
    }
    try:
        match = await lookup_with_timeout(registry, claim, REGISTRY_LOOKUP_TIMEOUT)
    except RegistryLookupError as e:
        match = RecordMatchResult(
            found=False, status="NOT_FOUND", can_approve=False,
            message=f"Registry lookup failed: {e}", status_type="LOOKUP_ERROR",
        )

    fraud = analyze(fields, match, category)
    expiry_value = fields.first("insuranceExpiry", "expiryDate") if category == "insurance" else fields.get("expiryDate")
    expiry = check_expiry(expiry_value)
    decision = decide(category, fields, match, fraud, expiry.is_valid, claim, AutoVerificationConfig.from_env())
    return match, fraud, expiry, decision


def run_pipeline(
    file_path: str,
    document_type: str,
    mime_type: str | None = None,
    trace: bool = False,
    output_json: bool = False,
    text_only: bool = False,
):
    """Extract, parse and (for certificates) score one document."""
    if trace:
        os.environ["LTO_TRACE"] = "1"

    import logging
    if trace:
        logging.basicConfig(level=logging.DEBUG, format="%(message)s")
    else:
        logging.basicConfig(level=logging.WARNING)

    from lto_verify.pipeline.field_parser import parse_fields
    from lto_verify.pipeline.ingestion import extract_text

    path = Path(file_path)
    if not path.exists():
        print(f"File '{file_path}' not found.")
        sys.exit(1)

    text = extract_text(path, mime_type)
    if text_only:
        print(text)
        return

    fields = parse_fields(text, document_type)
    category = SCORED_TYPES.get(document_type)
    scored = asyncio.run(_score(category, fields)) if category and text else None

    if output_json:
        output = {
            "file": str(path),
            "document_type": document_type,
            "text_length": len(text),
            "fields": fields.to_dict(),
        }
        if scored:
            match, fraud, expiry, decision = scored
            output.update({
                "registry": match.to_dict(),
                "fraud": fraud.to_dict(),
                "expiry": expiry.to_dict(),
                "decision": decision.to_dict(),
            })
        print(json.dumps(output, indent=2, default=str))
        return

    # ── Pretty print results ──
    print(f"\n{'═' * 70}")
    print(f"  LTO Document Check — {path.name} ({document_type})")
    print(f"{'═' * 70}\n")

    if not text:
        print("  No text could be extracted from this file.\n")
        return

    print(f"  EXTRACTED FIELDS ({len(fields)} of them, {len(text)} chars of text)")
    print(f"  {'─' * 60}")
    if len(fields):
        for name, value in fields.values.items():
            confidence = fields.confidence.get(name)
            suffix = f"  (confidence {confidence:.2f})" if confidence is not None else ""
            print(f"  {name:<28} {str(value)[:60]}{suffix}")
    else:
        print("  No fields recognised.")
    print()

    if not scored:
        print(f"{'═' * 70}\n")
        return

    match, fraud, expiry, decision = scored
    print("  REGISTRY")
    print(f"  {'─' * 60}")
    print(f"  {match.status} — {match.message}\n")

    print(f"  FRAUD ANALYSIS (score {fraud.fraud_score}, {fraud.risk_level})")
    print(f"  {'─' * 60}")
    if fraud.indicators:
        for i in fraud.indicators:
            sev_icon = {"HIGH": "🟠", "MEDIUM": "🟡", "LOW": "🟢"}.get(i.severity, "⚪")
            print(f"  {sev_icon} [{i.type}] {i.message} (+{i.score})")
    else:
        print("  No fraud indicators.")
    print()

    expiry_icon = "✓" if expiry.is_valid else "✗"
    print(f"  EXPIRY: {expiry_icon} {expiry.reason} ({expiry.expiry_date or 'no date'})\n")

    status_icon = "✓" if decision.approved else "⚠"
    print(f"{'═' * 70}")
    print(f"  Decision: {status_icon} {decision.status} — score {decision.score}%")
    print(f"  {decision.reason}")
    print(f"{'═' * 70}\n")


def main():
    parser = argparse.ArgumentParser(
        description="LTO CLI — Run the document verification pipeline on one file",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("file", help="Path to a PDF or image")
    parser.add_argument("--type", default="insurance_cert", help="Document type, one of config.DOCUMENT_TYPES (default: insurance_cert)")
    parser.add_argument("--mime", default=None, help="MIME type; inferred from the extension when omitted")
    parser.add_argument("--trace", action="store_true", help="Enable LTO_TRACE debug output")
    parser.add_argument("--json", action="store_true", help="Output raw JSON instead of pretty print")
    parser.add_argument("--text-only", action="store_true", help="Print the extracted text and stop")

    args = parser.parse_args()

    # LTO_TRACE is read when lto_verify.config is first imported
    if args.trace:
        os.environ["LTO_TRACE"] = "1"
    from lto_verify.config import DOCUMENT_TYPES
    if args.type not in DOCUMENT_TYPES:
        parser.error(f"unknown document type '{args.type}' (choose from {', '.join(DOCUMENT_TYPES)})")

    run_pipeline(
        args.file,
        args.type,
        mime_type=args.mime,
        trace=args.trace,
        output_json=args.json,
        text_only=args.text_only,
    )


if __name__ == "__main__":
    main()
