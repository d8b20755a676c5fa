#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Site Compliance Engine - Pipeline Runner

Run one compliance cycle: baseline evaluation, analyst proposals, report.

Usage:
    python run_pipeline.py                      # Run with existing data
    python run_pipeline.py --seed               # Initialize with sample data
    python run_pipeline.py --program Paint      # Evaluate another program
    python run_pipeline.py --as-of 2025-06-30   # Evaluate at a fixed date
"""

import argparse
import os
import sys
from datetime import date
from dotenv import load_dotenv

# Load environment variables (OPENAI_API_KEY, SITE_COMPLIANCE_DB)
load_dotenv()

# Verify API key
if not os.getenv("OPENAI_API_KEY"):
    print("Error: OPENAI_API_KEY not found in environment.")
    print("Please set it in .env file or environment variable.")
    sys.exit(1)


def main():
    from site_compliance.config import DB_PATH, DEFAULT_PROGRAM, PROGRAMS

    parser = argparse.ArgumentParser(
        description="Run the Site Compliance Pipeline"
    )
    parser.add_argument(
        "--seed",
        action="store_true",
        help="Initialize database with sample data",
    )
    parser.add_argument(
        "--db",
        type=str,
        default=DB_PATH,
        help="Path to database file",
    )
    parser.add_argument(
        "--program",
        choices=PROGRAMS,
        default=DEFAULT_PROGRAM,
        help="Stewardship program to evaluate",
    )
    parser.add_argument(
        "--as-of",
        type=date.fromisoformat,
        default=None,
        help="Evaluation date (YYYY-MM-DD), default today",
    )

    args = parser.parse_args()

    # Import here so the API key check runs before the agents SDK loads
    from site_compliance.errors import ComplianceError
    from site_compliance.pipeline import run_pipeline_sync

    try:
        run_pipeline_sync(
            db_path=args.db,
            seed_data=args.seed,
            program=args.program,
            as_of=args.as_of,
        )

        print("\n" + "=" * 60)
        print("PIPELINE EXECUTION COMPLETE")
        print("=" * 60)

    except KeyboardInterrupt:
        print("\nPipeline interrupted by user.")
        sys.exit(1)
    except ComplianceError as e:
        print(f"\nCompliance error: {e}")
        print(f"Context: {e.context}")
        sys.exit(1)


if __name__ == "__main__":
    main()
