"""Test package initialisation.

The project source lives one directory above this package; add it to the path so
``import ptw_mvp`` works without an editable install.
"""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))
