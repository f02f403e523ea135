# vspilot/core/file_system_manager.py
import logging
import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

BACKUP_DIR_NAME = ".vspilot/backups"
# Directories never listed or searched.
IGNORED_DIRS = {".git", ".vs", ".vspilot", "bin", "obj", "node_modules", "__pycache__", "venv", ".venv"}


class FileSystemManager:
    """
    File access for the automation core, sandboxed to a project root.

    Every path argument is relative to the project root; absolute paths and
    `..` traversal are rejected. Destructive writes through `modify_file` keep
    a timestamped backup under `.vspilot/backups` that `restore_backup` can
    bring back.
    """
    def __init__(self, project_root_path: str | Path):
        """
        Raises:
            ValueError: If the project root does not exist or is not a directory.
        """
        root = Path(project_root_path).expanduser().resolve()
        if not root.is_dir():
            raise ValueError(f"Project root '{root}' does not exist or is not a directory.")
        self.project_root = root
        self.backup_root = self.project_root / BACKUP_DIR_NAME
        logger.info(f"FileSystemManager initialized for project root: {self.project_root}")

    def _resolve_safe_path(self, relative_path: str | Path) -> Path:
        """
        Resolves a relative path against the project root and confirms that the
        result stays strictly inside it.

        Raises:
            ValueError: If the path is empty, absolute, contains null bytes, or
                        escapes the project root.
        """
        relative_path_str = str(relative_path) if relative_path is not None else ""
        if not relative_path_str or "\0" in relative_path_str:
            raise ValueError("Invalid relative path provided: cannot be empty or contain null bytes.")
        if os.path.isabs(relative_path_str) or (os.altsep and relative_path_str.startswith(os.altsep)):
            logger.error(f"Security Risk: Absolute path provided ('{relative_path_str}'). Operation blocked.")
            raise ValueError("Absolute paths are not allowed.")
        if ".." in Path(relative_path_str).parts:
            logger.error(f"Security Risk: Path traversal detected ('{relative_path_str}'). Operation blocked.")
            raise ValueError("Path traversal using '..' is not allowed.")

        normalized_relative = os.path.normpath(relative_path_str).strip(os.sep + (os.altsep or ""))
        if not normalized_relative or normalized_relative == ".":
            raise ValueError(f"Invalid relative path provided after normalization: '{relative_path_str}'")

        absolute_path = (self.project_root / normalized_relative).resolve()
        # Symlinks may still point outside the root.
        if absolute_path != self.project_root and self.project_root not in absolute_path.parents:
            logger.error(f"Security Risk: '{relative_path_str}' resolves outside the project root.")
            raise ValueError(f"Path '{relative_path_str}' resolves outside the project root.")
        return absolute_path

    def to_relative(self, absolute_path: str | Path) -> str:
        """Converts a path inside the project into its POSIX-style relative form."""
        path = Path(absolute_path)
        if not path.is_absolute():
            return path.as_posix()
        return path.resolve().relative_to(self.project_root).as_posix()

    # --- Text & binary access ---

    def read_file(self, relative_path: str | Path, encoding: str = "utf-8") -> str:
        """
        Raises:
            FileNotFoundError: If the file does not exist.
        """
        path = self._resolve_safe_path(relative_path)
        if not path.is_file():
            raise FileNotFoundError(f"File not found: {relative_path}")
        return path.read_text(encoding=encoding)

    def write_file(self, relative_path: str | Path, content: str, encoding: str = "utf-8") -> None:
        """Writes text, creating parent directories as needed."""
        path = self._resolve_safe_path(relative_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding=encoding)
        logger.info(f"Wrote {len(content)} characters to '{relative_path}'.")

    def read_binary(self, relative_path: str | Path) -> bytes:
        path = self._resolve_safe_path(relative_path)
        if not path.is_file():
            raise FileNotFoundError(f"File not found: {relative_path}")
        return path.read_bytes()

    def write_binary(self, relative_path: str | Path, data: bytes) -> None:
        path = self._resolve_safe_path(relative_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.info(f"Wrote {len(data)} bytes to '{relative_path}'.")

    def file_exists(self, relative_path: str | Path) -> bool:
        try:
            return self._resolve_safe_path(relative_path).is_file()
        except ValueError:
            return False

    def delete_file(self, relative_path: str | Path) -> None:
        """Deletes a file after backing it up. Missing files are ignored."""
        path = self._resolve_safe_path(relative_path)
        if not path.is_file():
            logger.warning(f"Cannot delete non-existent file: {relative_path}")
            return
        self.create_backup(relative_path)
        path.unlink()
        logger.info(f"Deleted file '{relative_path}'.")

    def create_file(self, relative_path: str | Path, content: str) -> None:
        """
        Raises:
            FileExistsError: If the file already exists. Use `modify_file` to overwrite.
        """
        if self.file_exists(relative_path):
            raise FileExistsError(f"File already exists: {relative_path}")
        self.write_file(relative_path, content)

    def modify_file(self, relative_path: str | Path, content: str) -> Optional[Path]:
        """
        Overwrites a file, backing up its previous content first.

        Returns:
            The backup path, or None when the file did not exist before.
        """
        backup_path = self.create_backup(relative_path) if self.file_exists(relative_path) else None
        self.write_file(relative_path, content)
        return backup_path

    def list_files(self, folder: str | Path = ".", pattern: str = "*", recursive: bool = True) -> List[str]:
        """
        Lists files under a project folder as sorted POSIX-style relative paths,
        skipping VCS, build output and backup directories.
        """
        base = self.project_root if str(folder) in ("", ".") else self._resolve_safe_path(folder)
        if not base.is_dir():
            return []
        candidates = base.rglob(pattern) if recursive else base.glob(pattern)
        results: List[str] = []
        for path in candidates:
            if not path.is_file():
                continue
            relative = path.relative_to(self.project_root)
            if any(part in IGNORED_DIRS for part in relative.parts[:-1]):
                continue
            results.append(relative.as_posix())
        return sorted(results)

    # --- Backups ---

    def _backup_prefix(self, relative_path: str | Path) -> Path:
        relative = self._resolve_safe_path(relative_path).relative_to(self.project_root)
        return self.backup_root / relative

    def create_backup(self, relative_path: str | Path) -> Path:
        """
        Copies a file to `.vspilot/backups/<path>.<timestamp>.bak`.

        Raises:
            FileNotFoundError: If the file does not exist.
            RuntimeError: If the copy fails.
        """
        source = self._resolve_safe_path(relative_path)
        if not source.is_file():
            raise FileNotFoundError(f"Cannot backup non-existent file: {relative_path}")
        prefix = self._backup_prefix(relative_path)
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S%f")
        backup_path = prefix.with_name(f"{prefix.name}.{timestamp}.bak")
        try:
            backup_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, backup_path)
        except OSError as e:
            logger.error(f"Failed to create backup for {relative_path}: {e}")
            raise RuntimeError(f"Failed to create backup for {relative_path}: {e}") from e
        logger.info(f"Created backup for '{relative_path}' at '{backup_path}'")
        return backup_path

    def list_backups(self, relative_path: str | Path) -> List[Path]:
        """Backups of a file, oldest first."""
        prefix = self._backup_prefix(relative_path)
        if not prefix.parent.is_dir():
            return []
        return sorted(prefix.parent.glob(f"{prefix.name}.*.bak"))

    def restore_backup(self, relative_path: str | Path) -> Path:
        """
        Restores the most recent backup of a file and removes that backup.

        Returns:
            The backup that was restored.

        Raises:
            FileNotFoundError: If the file has no backup.
        """
        backups = self.list_backups(relative_path)
        if not backups:
            raise FileNotFoundError(f"No backup found for '{relative_path}'.")
        latest = backups[-1]
        target = self._resolve_safe_path(relative_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(latest), target)
        logger.info(f"Restored '{relative_path}' from '{latest}'")
        return latest
