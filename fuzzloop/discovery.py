"""
Fuzz target discovery.

Go fuzz entry points are top-level functions named ``FuzzXxx`` declared in
``*_test.go`` files. Discovery only looks at the given directory, not at
subpackages, because ``go test -fuzz`` can only fuzz one package at a time.
"""

import re
import sys
from pathlib import Path

FUZZ_PREFIX = "Fuzz"
TEST_FILE_GLOB = "*_test.go"

# Top-level declarations only: methods ("func (r T) FuzzX") and indented
# closures never match.
FUZZ_FUNC_REGEX = re.compile(rf"^func ({FUZZ_PREFIX}\w*)\s*[(\[]", re.MULTILINE)


def find_fuzz_functions(source: str) -> list[str]:
    """Return the fuzz entry point names declared in one Go source text."""
    return FUZZ_FUNC_REGEX.findall(source)


def discover_fuzz_targets(directory: Path | None = None) -> list[str]:
    """
    Scan ``directory`` (default: the current working directory) for fuzz
    entry points and return their distinct names, sorted.

    Files that cannot be read are skipped with a warning. An empty list is
    a valid result; deciding whether that is fatal is up to the caller.
    """
    directory = Path.cwd() if directory is None else directory
    names: set[str] = set()
    for test_file in sorted(directory.glob(TEST_FILE_GLOB)):
        if not test_file.is_file():
            continue
        try:
            source = test_file.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            print(f"[!] Warning: Could not read {test_file}: {e}", file=sys.stderr)
            continue
        names.update(find_fuzz_functions(source))
    return sorted(names)


def parse_fuzz_targets(targets_csv: str) -> list[str]:
    """
    Split an explicit comma-separated target list, keeping order and duplicates.

    A single trailing comma ("FuzzA,") does not produce an empty target.
    """
    targets = targets_csv.split(",")
    if len(targets) > 1 and targets[-1] == "":
        targets.pop()
    return targets
