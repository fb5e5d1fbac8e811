import sys
from pathlib import Path

# Ensure 'src' directory is on sys.path for imports
ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "src"))
