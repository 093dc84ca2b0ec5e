# Root conftest: make the project root importable for `config` and `orbminer`
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
