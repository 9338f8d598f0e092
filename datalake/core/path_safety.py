from __future__ import annotations

from pathlib import Path, PurePosixPath


class PathSafetyError(ValueError):
    pass


def validate_object_path(raw_path: str) -> PurePosixPath:
    if not raw_path or not raw_path.strip():
        raise PathSafetyError("Object path cannot be blank")
    if raw_path.startswith("/"):
        raise PathSafetyError("Object path must be relative to the blob root")
    if "\\" in raw_path:
        raise PathSafetyError("Backslashes are not allowed in object paths")
    if ".." in PurePosixPath(raw_path).parts:
        raise PathSafetyError("Path traversal is not allowed")
    if "~" in raw_path:
        raise PathSafetyError("Home expansion is not allowed")
    if "$" in raw_path:
        raise PathSafetyError("Environment variable expansion is not allowed")
    return PurePosixPath(raw_path)


def resolve_under_root(root: Path, raw_path: str) -> Path:
    rel = validate_object_path(raw_path)
    resolved_root = root.resolve(strict=False)
    candidate = (resolved_root / rel).resolve(strict=False)

    if candidate != resolved_root and resolved_root in candidate.parents:
        return candidate

    raise PathSafetyError("Path escapes blob root")


def safe_file_name(raw_name: str | None, fallback: str = "upload") -> str:
    if raw_name is None:
        return fallback
    name = raw_name.replace("\\", "/").rsplit("/", 1)[-1].strip()
    if name in {"", ".", ".."}:
        return fallback
    if "~" in name or "$" in name:
        raise PathSafetyError(f"Unsafe file name: {raw_name}")
    return name
