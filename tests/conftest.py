"""Root conftest for all tests - setup sys.path for the src layout."""

import sys
from pathlib import Path

# Add src/ to sys.path so tests run without an editable install
src_root = Path(__file__).parent.parent / "src"
if str(src_root) not in sys.path:
    sys.path.insert(0, str(src_root))
