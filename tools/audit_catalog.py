from __future__ import annotations
import os, sys
from exam_core.audit_catalog import audit_tests, print_report, write_summary
from exam_core.catalog import load_catalog
from pathlib import Path

# minimum tests per module before a catalog is considered shippable
TARGETS = {
    "listening": int(os.getenv("TARGET_LISTENING_MIN", 1)),
    "reading": int(os.getenv("TARGET_READING_MIN", 1)),
    "writing": int(os.getenv("TARGET_WRITING_MIN", 1)),
    "speaking": int(os.getenv("TARGET_SPEAKING_MIN", 1)),
}

def main(argv: list[str]) -> int:
    summary = audit_tests(load_catalog())
    print_report(summary)

    print(f"\nTargets per module: {', '.join(f'{m} ≥{n}' for m, n in TARGETS.items())}")
    short = 0
    for module, need in TARGETS.items():
        have = summary["coverage"][module]["tests"]
        if have < need:
            short += 1
            print(f"  → {module}: add {need - have} test(s)")
    if not short:
        print("  ✓ Meets targets")

    if argv:
        write_summary(summary, Path(argv[0]))
        print(f"\nsummary written to {argv[0]}")
    return 2 if (summary["warnings"] or short) else 0

if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
