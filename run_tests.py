#!/usr/bin/env python3
"""
Test runner script for microarray_toolkit

This script runs the test suite and provides a summary of results.
"""

import subprocess
import sys
import os


def run_command(cmd, description):
    """Run a command and return success status"""
    print(f"\n{'='*60}")
    print(f"🧪 {description}")
    print('='*60)

    try:
        result = subprocess.run(cmd, shell=True, check=False, cwd=os.path.dirname(os.path.abspath(__file__)))
    except OSError as e:
        print(f"💥 {description} - ERROR: {e}")
        return False

    if result.returncode == 0:
        print(f"✅ {description} - PASSED")
        return True
    print(f"❌ {description} - FAILED (exit code: {result.returncode})")
    return False


def main():
    """Run the full test suite"""

    print("Microarray Toolkit Test Suite")
    print("="*60)

    project_root = os.path.dirname(os.path.abspath(__file__))
    os.chdir(project_root)

    test_commands = [
        ("python -m pytest tests/test_data_import.py -v --tb=short", "Data Import Tests"),
        ("python -m pytest tests/test_normalization.py -v --tb=short", "RMA Normalization Tests"),
        ("python -m pytest tests/test_statistical_analysis.py -v --tb=short", "Linear Model Tests"),
        ("python -m pytest tests/test_pipeline.py -v --tb=short", "Pipeline Tests"),
        ("python -m pytest tests/ --tb=short -q", "Complete Test Suite (Quick)"),
    ]
    if "--run-network" in sys.argv:
        test_commands.append(
            ("python -m pytest tests/test_enrichment.py -v --tb=short --run-network", "Enrichr API Tests")
        )

    results = []
    for cmd, description in test_commands:
        success = run_command(cmd, description)
        results.append((description, success))

    print(f"\n{'='*60}")
    print("📊 TEST SUMMARY")
    print('='*60)

    passed_count = 0
    total_count = len(results)

    for description, success in results:
        status = "✅ PASSED" if success else "❌ FAILED"
        print(f"{status:12} - {description}")
        if success:
            passed_count += 1

    print(f"\n Overall: {passed_count}/{total_count} test suites passed")

    if passed_count == total_count:
        print("All test suites completed successfully!")
        return 0
    print(f" {total_count - passed_count} test suite(s) had failures")
    return 1


if __name__ == "__main__":
    sys.exit(main())
