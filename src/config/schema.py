"""Remap configuration — validated at the boundary, before the engine runs.

A configuration is everything needed to rebuild the mapping surface:
seed token, frame geometry, nominal cell size and the encoded regions.
Nothing else carries across builds.
"""

import json
import re
from dataclasses import dataclass, field

# Same ranges as the OBS filter properties
MAX_WIDTH = 3840
MAX_HEIGHT = 2160
MAX_CELL_SIZE = 2048

DEFAULT_SEED = "0"
DEFAULT_RESOLUTION = (1920, 1080)
DEFAULT_CELL_SIZE = 16

REQUIRED_KEYS = {"width", "height"}

_INT_TOKEN = re.compile(r"[0-9]+")


class ConfigurationError(ValueError):
    """Malformed remap configuration. The engine refuses to build a mapping."""


Region = tuple[int, int, int, int]


def parse_regions(text: str) -> list[Region]:
    """Parse region text like ``"[0,0,1920,100],[0,100,200,800]"``.

    Brackets, commas and whitespace between regions are tolerated. Empty
    text yields an empty list. Raises ConfigurationError naming the first
    malformed fragment.
    """
    regions: list[Region] = []
    for chunk in text.split("]"):
        body = chunk.strip().lstrip(",").strip().lstrip("[")
        if not body.strip():
            continue
        parts = [p.strip() for p in body.split(",")]
        if len(parts) < 4:
            raise ConfigurationError(
                f"Region needs 4 elements (left,top,right,bottom): '{body}'"
            )
        numbers = parts[:4]
        if not all(_INT_TOKEN.fullmatch(p) for p in numbers):
            raise ConfigurationError(f"Region elements must be integers: '{body}'")
        left, top, right, bottom = (int(p) for p in numbers)
        regions.append((left, top, right, bottom))
    return regions


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass(frozen=True)
class RemapConfig:
    """Structured remap configuration.

    ``regions`` empty means the whole frame is one encoded region.
    ``progress`` only affects the scramble map (0 = untouched layout,
    1 = fully scrambled).
    """

    seed: str = DEFAULT_SEED
    width: int = DEFAULT_RESOLUTION[0]
    height: int = DEFAULT_RESOLUTION[1]
    cell_size_x: int = DEFAULT_CELL_SIZE
    cell_size_y: int = DEFAULT_CELL_SIZE
    regions: tuple[Region, ...] = field(default_factory=tuple)
    progress: float = 1.0

    def __post_init__(self):
        errors = self.validate()
        if errors:
            raise ConfigurationError(f"Invalid configuration: {'; '.join(errors)}")

    def validate(self) -> list[str]:
        """Return a list of problems (empty = valid)."""
        errors = []

        if not isinstance(self.seed, str):
            errors.append("'seed' must be a string")

        for name, limit in (
            ("width", MAX_WIDTH),
            ("height", MAX_HEIGHT),
            ("cell_size_x", MAX_CELL_SIZE),
            ("cell_size_y", MAX_CELL_SIZE),
        ):
            value = getattr(self, name)
            if not _is_int(value):
                errors.append(f"'{name}' must be an integer, got {type(value).__name__}")
            elif not 1 <= value <= limit:
                errors.append(f"'{name}' must be in 1..{limit}, got {value}")

        if isinstance(self.progress, bool) or not isinstance(
            self.progress, (int, float)
        ):
            errors.append("'progress' must be a number")
        elif not 0.0 <= self.progress <= 1.0:
            errors.append(f"'progress' must be in 0..1, got {self.progress}")

        if errors:
            return errors  # geometry unknown, can't check regions

        for i, region in enumerate(self.regions):
            if (
                not isinstance(region, (list, tuple))
                or len(region) != 4
                or not all(_is_int(v) for v in region)
            ):
                errors.append(f"region {i} must be 4 integers, got {region!r}")
                continue
            left, top, right, bottom = region
            if left < 0 or top < 0:
                errors.append(f"region {i} {region} has negative coordinates")
            if left >= right or top >= bottom:
                errors.append(f"region {i} {region} is empty")
            if right > self.width or bottom > self.height:
                errors.append(
                    f"region {i} {region} exceeds frame {self.width}x{self.height}"
                )
        return errors

    @property
    def effective_regions(self) -> list[Region]:
        """Declared regions, or the full frame when none are declared."""
        if self.regions:
            return list(self.regions)
        return [(0, 0, self.width, self.height)]

    @property
    def resolution(self) -> tuple[int, int]:
        return self.width, self.height

    @classmethod
    def from_dict(cls, data: dict) -> "RemapConfig":
        """Build a config from a plain dict (JSON payload, CLI, file).

        ``regions`` may be a list of 4-element lists or region text.
        Raises ConfigurationError on any problem.
        """
        if not isinstance(data, dict):
            raise ConfigurationError("configuration must be a JSON object")
        missing = REQUIRED_KEYS - set(data.keys())
        if missing:
            raise ConfigurationError(f"Missing configuration keys: {sorted(missing)}")

        raw_regions = data.get("regions") or []
        if isinstance(raw_regions, str):
            regions = parse_regions(raw_regions)
        elif isinstance(raw_regions, (list, tuple)):
            regions = []
            for region in raw_regions:
                if not isinstance(region, (list, tuple)):
                    raise ConfigurationError(f"region must be a list, got {region!r}")
                regions.append(tuple(region))
        else:
            raise ConfigurationError("'regions' must be a list or region text")

        seed = data.get("seed", DEFAULT_SEED)
        if _is_int(seed):
            seed = str(seed)

        return cls(
            seed=seed,
            width=data["width"],
            height=data["height"],
            cell_size_x=data.get("cell_size_x", DEFAULT_CELL_SIZE),
            cell_size_y=data.get("cell_size_y", DEFAULT_CELL_SIZE),
            regions=tuple(regions),
            progress=data.get("progress", 1.0),
        )

    def to_dict(self) -> dict:
        return {
            "seed": self.seed,
            "width": self.width,
            "height": self.height,
            "cell_size_x": self.cell_size_x,
            "cell_size_y": self.cell_size_y,
            "regions": [list(r) for r in self.regions],
            "progress": self.progress,
        }


def serialize(config: RemapConfig) -> str:
    """Serialize a config to a JSON string."""
    return json.dumps(config.to_dict(), indent=2)


def deserialize(data: str) -> RemapConfig:
    """Deserialize JSON to a config. Raises ConfigurationError on bad JSON or schema."""
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON: {e}") from e
    return RemapConfig.from_dict(payload)
