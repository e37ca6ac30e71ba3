"""
Test configuration and fixtures
"""
import sys
from pathlib import Path

# Add src and the shared test helpers to Python path
project_root = Path(__file__).parent.parent
src_path = project_root / "src"
helpers_path = Path(__file__).parent / "vestledger_tests"

sys.path.insert(0, str(src_path))
sys.path.insert(0, str(helpers_path))
