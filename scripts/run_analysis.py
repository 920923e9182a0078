from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List

import pandas as pd

from playbook_engine.config_model.model import load_config
from playbook_engine.pipeline import run_analysis
from playbook_engine.playbooks.registry import PlaybookRegistry

# ---------- pandas dtype -> declared column type ----------
def _declared_type(s: pd.Series) -> str:
    if pd.api.types.is_bool_dtype(s):
        return "boolean"
    if pd.api.types.is_numeric_dtype(s):
        return "numeric"
    if pd.api.types.is_datetime64_any_dtype(s):
        return "date"
    return "text"

def _read_rows(path: Path, sep: str | None, limit: int) -> tuple[List[Dict[str, Any]], List[Dict[str, str]]]:
    df = pd.read_csv(path, sep=sep, engine="python" if sep is None else "c")
    if limit > 0:
        df = df.head(limit)
    schema = [{"name": str(c), "type": _declared_type(df[c])} for c in df.columns]
    # NaN -> None so formulas see missing cells as null
    rows = df.astype(object).where(df.notna(), None).to_dict(orient="records")
    return rows, schema

def main() -> None:
    ap = argparse.ArgumentParser(description="Run the playbook analysis pipeline over a CSV file.")
    ap.add_argument("csv", help="Path to the CSV file.")
    ap.add_argument("--question", default="", help="User question driving the analysis.")
    ap.add_argument("--config", default=None, help="Path to config TOML (default: $PLAYBOOK_CFG or config/config.toml).")
    ap.add_argument("--sep", default=None, help="CSV separator (sniffed when omitted).")
    ap.add_argument("--limit", type=int, default=0, help="Only read the first N rows (0 = all).")
    ap.add_argument("--text", action="store_true", help="Print the narrative text instead of the JSON result.")
    args = ap.parse_args()

    path = Path(args.csv)
    if not path.exists():
        print(f"[run_analysis] file not found: {path}", file=sys.stderr)
        sys.exit(2)

    cfg = load_config(args.config)
    rows, schema = _read_rows(path, args.sep, args.limit)
    outcome = run_analysis(rows, schema, args.question, registry=PlaybookRegistry.from_config(cfg), cfg=cfg)

    if args.text:
        print(outcome.blocked_message or outcome.narrative_text)
    else:
        print(json.dumps(outcome.to_dict(), ensure_ascii=False, indent=2, default=str))
    if outcome.status == "blocked":
        sys.exit(1)

if __name__ == "__main__":
    main()
