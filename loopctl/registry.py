"""
LoopRegistry - Load and validate LoopDefs from storage.

The registry is the Loop Definition Store. It provides:
- Loading LoopDefs from YAML or JSON files in a definitions directory
- Version support (optional, default="latest")
- Caching loaded definitions
- Validation of LoopDef structure
- Content-addressable lookup via SHA256 hash
- Programmatic registration of definitions (embedding, tests)

The engine only reads from the registry; definitions are never mutated.
"""

import hashlib
import json
import logging
from pathlib import Path
from typing import Optional

import yaml

from loopctl.errors import LoopNotFoundError, LoopValidationError
from loopctl.schemas import LoopDef, LoopSummary


logger = logging.getLogger(__name__)

# Loop definitions shipped with the package
BUNDLED_DEFINITIONS_DIR = Path(__file__).parent / "definitions"


class LoopRegistry:
    """
    Registry for loading and caching LoopDefs.

    Loads loop definitions from files organized in a directory tree.
    The file stem is the loop id. Supports both flat and nested
    directory structures.

    Example directory structure:
        definitions/
            engineering-loop.yaml
            ops/
                incident-loop.yaml
    """

    def __init__(self, definitions_dir: Optional[Path | str] = None):
        """
        Initialize the registry.

        Args:
            definitions_dir: Directory containing loop definition files.
                Defaults to the definitions bundled with loopctl.
        """
        self._definitions_dir = Path(definitions_dir) if definitions_dir else BUNDLED_DEFINITIONS_DIR
        self._cache: dict[str, LoopDef] = {}
        self._registered: dict[str, LoopDef] = {}
        self._hash_index: dict[str, str] = {}  # sha256 -> loop_id

    @property
    def definitions_dir(self) -> Path:
        """Get the definitions directory path."""
        return self._definitions_dir

    def register(self, loop_def: LoopDef) -> None:
        """
        Register a definition that does not live on disk.

        Registered definitions take precedence over files with the same id.
        """
        self._registered[loop_def.loop_id] = loop_def
        self._cache[loop_def.loop_id] = loop_def
        self._hash_index[self.compute_hash(loop_def)] = loop_def.loop_id

    def get_loop(self, loop_id: str) -> Optional[LoopDef]:
        """
        Look up a loop definition.

        Args:
            loop_id: The loop identifier

        Returns:
            The LoopDef, or None if no definition exists

        Raises:
            LoopValidationError: If a definition exists but is invalid
        """
        try:
            return self.load(loop_id)
        except LoopNotFoundError:
            return None

    def load(self, loop_id: str, version: Optional[str] = None) -> LoopDef:
        """
        Load a LoopDef by ID and optional version.

        Searches for {loop_id}.yaml or {loop_id}.json in the definitions directory tree.
        YAML files are preferred over JSON when both exist.
        Results are cached for subsequent calls.

        Args:
            loop_id: The loop identifier (filename without extension)
            version: Optional version string. If provided and not "latest",
                     validates that the loaded LoopDef has this version.

        Returns:
            The loaded LoopDef

        Raises:
            LoopNotFoundError: If the definition doesn't exist or the version doesn't match
            LoopValidationError: If the definition is invalid
        """
        loop_def = self._cache.get(loop_id)
        if loop_def is None:
            loop_def = self._load_from_disk(loop_id)

        if version is not None and version != "latest" and loop_def.version != version:
            raise LoopNotFoundError(
                f"Version mismatch for {loop_id}: requested '{version}', found '{loop_def.version}'"
            )
        return loop_def

    def _load_from_disk(self, loop_id: str) -> LoopDef:
        def_path = self._find_definition(loop_id)
        if def_path is None:
            raise LoopNotFoundError(f"Loop definition not found: {loop_id}")

        try:
            data = self._load_file(def_path)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise LoopValidationError(f"Failed to load {def_path}: {e}")

        if not isinstance(data, dict):
            raise LoopValidationError(f"Invalid LoopDef in {def_path}: expected a mapping")

        try:
            loop_def = LoopDef.from_dict(data)
        except LoopValidationError as e:
            raise LoopValidationError(f"Invalid LoopDef in {def_path}: {e}")

        if loop_def.loop_id != loop_id:
            raise LoopValidationError(
                f"Loop ID mismatch: file is '{loop_id}' but loop_id is '{loop_def.loop_id}'"
            )

        self._cache[loop_id] = loop_def
        self._hash_index[self.compute_hash(loop_def)] = loop_id
        logger.debug(f"Loaded loop definition {loop_id} v{loop_def.version} from {def_path}")
        return loop_def

    def _load_file(self, path: Path) -> dict:
        """
        Load a definition file (YAML or JSON).

        Args:
            path: Path to the file

        Returns:
            Parsed dictionary

        Raises:
            ValueError: If file format is unsupported
        """
        suffix = path.suffix.lower()

        with open(path) as f:
            if suffix in (".yaml", ".yml"):
                return yaml.safe_load(f)
            elif suffix == ".json":
                return json.load(f)
            else:
                raise ValueError(f"Unsupported file format: {suffix}")

    def load_by_hash(self, sha256: str) -> Optional[LoopDef]:
        """
        Load a LoopDef by its content hash.

        Args:
            sha256: The SHA256 hash of the LoopDef

        Returns:
            The LoopDef if found in cache, None otherwise
        """
        loop_id = self._hash_index.get(sha256)
        if loop_id is None:
            return None
        return self._cache.get(loop_id)

    def list_loop_ids(self) -> list[str]:
        """
        List all available loop IDs.

        Returns:
            Sorted list of loop IDs found on disk or registered
        """
        loop_ids = set(self._registered)
        if self._definitions_dir.exists():
            for ext in ["*.yaml", "*.yml", "*.json"]:
                for f in self._definitions_dir.glob(f"**/{ext}"):
                    if "_deprecated" not in f.relative_to(self._definitions_dir).parts:
                        loop_ids.add(f.stem)

        return sorted(loop_ids)

    def list_loops(self) -> list[LoopSummary]:
        """
        Summaries of every valid loop definition.

        Invalid definition files are logged and left out of the listing.
        """
        summaries = []
        for loop_id in self.list_loop_ids():
            try:
                summaries.append(self.load(loop_id).summary())
            except LoopValidationError as e:
                logger.warning(f"Skipping invalid loop definition {loop_id}: {e}")
        return summaries

    def _find_definition(self, loop_id: str) -> Optional[Path]:
        """
        Find the definition file for a loop ID.

        Searches the definitions directory recursively.
        YAML files are preferred over JSON.

        Args:
            loop_id: The loop identifier

        Returns:
            Path to the definition file, or None if not found
        """
        if not self._definitions_dir.exists():
            return None

        for ext in [".yaml", ".yml", ".json"]:
            filename = f"{loop_id}{ext}"

            root_path = self._definitions_dir / filename
            if root_path.exists():
                return root_path

            matches = list(self._definitions_dir.glob(f"**/{filename}"))
            if matches:
                return matches[0]

        return None

    @staticmethod
    def compute_hash(loop_def: LoopDef) -> str:
        """
        Compute SHA256 hash of a LoopDef for content addressing.

        Uses canonical JSON serialization (sorted keys, no whitespace)
        to ensure consistent hashing.
        """
        canonical = json.dumps(loop_def.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()

    def clear_cache(self) -> None:
        """Clear the definition cache. Registered definitions are kept."""
        self._cache = dict(self._registered)
        self._hash_index = {self.compute_hash(d): d.loop_id for d in self._registered.values()}

    def preload_all(self) -> int:
        """
        Preload all loop definitions into cache.

        Useful for startup validation.

        Returns:
            Number of loops loaded

        Raises:
            LoopValidationError: If any loop definition is invalid
        """
        count = 0
        for loop_id in self.list_loop_ids():
            self.load(loop_id)
            count += 1
        return count
