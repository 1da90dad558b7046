"""
Unit Test Layer Configuration

Structure:
    tests/unit/
    └── credit/      Pure ledger rules, status mapping, event parsing

Usage:
    pytest tests/unit -v
    pytest tests/unit -m unit -v
"""
import os
import sys

# Add project root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))
