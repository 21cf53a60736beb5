"""
Tests for the Table Sync Plugin Modules

This package contains tests for the sync engine: configuration, SQL
building, schema validation, retry and transactions, checkpoint storage,
mode detection, the load strategies and the orchestrator.
"""

import os
import sys

# Add plugins directory to Python path (Airflow does this automatically at runtime)
plugins_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..', 'plugins'))
if plugins_dir not in sys.path:
    sys.path.insert(0, plugins_dir)
