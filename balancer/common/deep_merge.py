from __future__ import annotations
import json
from pathlib import Path
from typing import Any


def strip_jsonc_comments(src: str) -> str:
	"""
	Strip // and /* */ comments from JSONC while preserving string contents.
	Comment tokens inside JSON strings are left untouched.
	"""
	out: list[str] = []
	i = 0
	n = len(src)
	in_string = False
	escape = False

	while i < n:
		ch = src[i]

		if in_string:
			out.append(ch)
			if escape:
				escape = False
			elif ch == "\\":
				escape = True
			elif ch == '"':
				in_string = False
			i += 1
			continue

		if ch == '"':
			in_string = True
			out.append(ch)
			i += 1
			continue

		# Line comment //
		if ch == "/" and i + 1 < n and src[i + 1] == "/":
			i += 2
			while i < n and src[i] not in ("\n", "\r"):
				i += 1
			continue

		# Block comment /* ... */
		if ch == "/" and i + 1 < n and src[i + 1] == "*":
			i += 2
			while i + 1 < n and not (src[i] == "*" and src[i + 1] == "/"):
				i += 1
			i += 2 if i + 1 < n else 1
			continue

		out.append(ch)
		i += 1

	return "".join(out)


def load_jsonc(path: str | Path) -> Any:
	"""Load a JSON or JSONC document from disk.

	Raises FileNotFoundError when the file is missing and json.JSONDecodeError
	when the content is not valid even after stripping comments.
	"""
	p = Path(path).expanduser()
	if not p.exists():
		raise FileNotFoundError(f"JSON file not found: {path}")

	content = p.read_text(encoding="utf-8")
	try:
		return json.loads(content)
	except json.JSONDecodeError:
		return json.loads(strip_jsonc_comments(content))


def load_json_optional(path: str | Path, default: Any = None) -> Any:
	"""Load JSON/JSONC from disk, returning a default on failure or missing file."""
	try:
		p = Path(path)
		if not p.exists():
			return default
		text = p.read_text(encoding="utf-8").strip()
		if not text:
			return default
		return load_jsonc(p)
	except (OSError, ValueError):
		return default


def _merge_two(left: Any, right: Any) -> Any:
	"""
	Merge right into left and return a new value (inputs are not mutated).

	Dicts merge recursively; for everything else (lists included) right wins.
	"""
	if isinstance(left, dict) and isinstance(right, dict):
		result = dict(left)
		for key, right_val in right.items():
			if key in result:
				result[key] = _merge_two(result[key], right_val)
			else:
				result[key] = right_val
		return result
	return right


def deep_merge(base: Any, *others: Any) -> Any:
	"""
	Deep-merge JSON-like sources left to right.

	Each source may be a dict or a path to a JSON/JSONC file. Later sources
	overwrite earlier ones on conflicts; nested dicts are merged key by key.
	"""
	def _resolve(source: Any) -> Any:
		if isinstance(source, (str, Path)):
			return load_jsonc(source)
		return source

	acc = _resolve(base)
	for src in others:
		acc = _merge_two(acc, _resolve(src))
	return acc


__all__ = ["deep_merge", "load_jsonc", "load_json_optional", "strip_jsonc_comments"]
