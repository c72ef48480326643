#!/usr/bin/env python3
"""CLI tool for scanning and repairing encrypted fields in the database.

Reports legacy ciphertext, stray plaintext and undecryptable values in
sensitive fields; with --repair, re-encrypts what can be re-encrypted and
back-fills missing blind indexes. Undecryptable values are never deleted.
"""

from __future__ import annotations

import argparse
import json
import os
import sys

# Allow running from repo root: add backend/ to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "backend"))

from sqlmodel import Session

import app.models  # noqa: F401  register SQLModel tables
from app.config import get_settings
from app.db import create_db_and_tables, engine
from app.models.registry import UnknownCollectionError
from app.services.encryption import EncryptionConfigError, FieldEncryptionEngine
from app.services.maintenance import EncryptionMaintenance


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Scan (and optionally repair) field-level encryption in stored records."
    )
    parser.add_argument(
        "--collection",
        "-c",
        default=None,
        help="Only process this collection (default: every collection with sensitive fields)",
    )
    parser.add_argument(
        "--repair",
        action="store_true",
        help="Rewrite legacy/plaintext values and back-fill blind indexes",
    )
    args = parser.parse_args()

    try:
        field_encryption = FieldEncryptionEngine.from_settings(get_settings())
    except EncryptionConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    create_db_and_tables()
    with Session(engine) as session:
        maintenance = EncryptionMaintenance(session, field_encryption)
        try:
            if args.repair:
                reports = maintenance.repair(args.collection)
            else:
                reports = maintenance.scan(args.collection)
        except UnknownCollectionError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1

    print(json.dumps([r.to_dict() for r in reports], indent=2))
    undecryptable = sum(len(r.undecryptable) for r in reports)
    if undecryptable:
        print(
            f"\n{undecryptable} document(s) hold values that cannot be decrypted "
            "with the configured keys or are not strings.",
            file=sys.stderr,
        )
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
