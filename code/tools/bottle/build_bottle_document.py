#!/usr/bin/env python3
"""Assemble a bottle document from a draft, or normalise an existing bottle file."""

import argparse
import json
import sys
from collections import OrderedDict
from pathlib import Path

from bottle_common import API_VERSION, KIND, dump_json_yaml, load_json_yaml
from draft_collections import Collection, Draft


def labels_map(collection: Collection) -> dict:
    out = OrderedDict()
    for entry in collection:
        out[entry.fields.get("key", "")] = entry.fields.get("value", "")
    return out


def parse_size(text: str) -> int:
    text = (text or "").strip()
    return int(text) if text else 0


def assemble(draft: Draft) -> dict:
    doc = OrderedDict()
    doc["kind"] = KIND
    doc["apiVersion"] = API_VERSION
    doc["description"] = draft.description
    doc["authors"] = [
        {"name": r["name"], "email": r["email"], "url": r["url"]}
        for r in draft.authors.records()
    ]
    doc["labels"] = labels_map(draft.labels)
    doc["metrics"] = [
        {"name": r["name"], "value": r["value"], "description": r["description"]}
        for r in draft.metrics.records()
    ]
    doc["parts"] = [
        {
            "name": part.fields["name"],
            "size": parse_size(part.fields["size"]),
            "digest": part.fields["digest"],
            "labels": labels_map(part.labels),
        }
        for part in draft.parts
        if not part.editing
    ]
    doc["sources"] = [
        {"name": r["name"], "uri": r["uri"]}
        for r in draft.sources.records()
    ]
    doc["annotations"] = OrderedDict(
        (r["key"], r["value"]) for r in draft.annotations.records()
    )
    return doc


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--bottle", default="entry.yaml", help="Path to an existing bottle document")
    parser.add_argument("--output", default=None, help="Output path (defaults to stdout)")
    args = parser.parse_args()

    bottle_path = Path(args.bottle)
    if not bottle_path.exists():
        print(f"Bottle file not found: {bottle_path}", file=sys.stderr)
        return 1
    try:
        bottle = load_json_yaml(bottle_path)
    except ValueError as exc:
        print(f"Could not parse {bottle_path}: {exc}", file=sys.stderr)
        return 1

    doc = assemble(Draft.from_bottle(bottle))

    if args.output:
        dump_json_yaml(Path(args.output), doc)
        print(f"Wrote bottle document: {args.output}")
        print(f"Authors: {len(doc['authors'])}  Sources: {len(doc['sources'])}  Parts: {len(doc['parts'])}")
        print(f"Labels: {len(doc['labels'])}  Annotations: {len(doc['annotations'])}  Metrics: {len(doc['metrics'])}")
    else:
        print(json.dumps(doc, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
