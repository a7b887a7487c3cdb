import os
import yaml
from dataclasses import dataclass, fields
from typing import Dict, Optional, Tuple, Any
from dotenv import load_dotenv

from .models import log, DEFAULT_IMAGE_SRC_ATTRIBUTES
from .errors import ValidationError

CONFIG_SEARCH_PATHS = ["digest.yaml", os.path.expanduser("~/.config/bookmark-digest/digest.yaml")]

# env name -> field name
ENV_OPTIONS = {
    "DATA_DIR": "data_dir",
    "DB_PATH": "db_path",
    "IMAGES_DIR": "images_dir",
    "EPUB_EXPORT_DIR": "export_dir",
    "IMAGE_TIMEOUT_MS": "image_timeout_ms",
    "MAX_IMAGE_SIZE_MB": "max_image_size_mb",
    "IMAGE_QUALITY": "image_quality",
    "IMAGE_MAX_DIMENSION": "image_max_dimension",
    "IMAGE_CONCURRENCY": "image_concurrency",
    "IMAGE_SRC_ATTRIBUTES": "image_src_attributes",
    "MAX_HTML_SIZE_MB": "max_html_size_mb",
    "MAX_ARTICLE_CONTENT_CHARS": "max_article_content_chars",
    "MIN_CONTENT_CHARS": "min_content_chars",
    "COVER_BACKGROUND_PATH": "cover_background",
    "COVER_FONT_PATH": "cover_font",
}

@dataclass
class DigestConfig:
    """Runtime configuration shared by every pipeline stage."""
    data_dir: str = "./data"
    db_path: Optional[str] = None
    images_dir: Optional[str] = None
    export_dir: Optional[str] = None
    image_timeout_ms: int = 10000
    max_image_size_mb: float = 5
    image_quality: int = 85
    image_max_dimension: int = 1200
    image_concurrency: int = 4
    image_src_attributes: Tuple[str, ...] = DEFAULT_IMAGE_SRC_ATTRIBUTES
    max_html_size_mb: float = 10
    max_article_content_chars: int = 500000
    min_content_chars: int = 500
    cover_background: Optional[str] = None
    cover_font: Optional[str] = None

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if f.type in (int, 'int') and not isinstance(value, int):
                setattr(self, f.name, _as_number(f.name, value, int))
            elif f.type in (float, 'float') and not isinstance(value, (int, float)):
                setattr(self, f.name, _as_number(f.name, value, float))
        if isinstance(self.image_src_attributes, str):
            self.image_src_attributes = tuple(a.strip() for a in self.image_src_attributes.split(',') if a.strip())
        else:
            self.image_src_attributes = tuple(self.image_src_attributes)
        if not self.image_src_attributes:
            raise ValidationError("image_src_attributes must name at least one attribute")
        if not 1 <= self.image_quality <= 100:
            raise ValidationError(f"image_quality must be within 1-100, got {self.image_quality}")
        if self.image_concurrency < 1:
            raise ValidationError("image_concurrency must be at least 1")

        self.db_path = self.db_path or os.path.join(self.data_dir, "bookmark-digest.db")
        self.images_dir = self.images_dir or os.path.join(self.data_dir, "images")
        self.export_dir = self.export_dir or os.path.join(self.data_dir, "epub-exports")

    @property
    def max_html_bytes(self) -> int:
        return int(self.max_html_size_mb * 1024 * 1024)

    @property
    def max_image_bytes(self) -> int:
        return int(self.max_image_size_mb * 1024 * 1024)

    @property
    def image_timeout_seconds(self) -> float:
        return self.image_timeout_ms / 1000

    @classmethod
    def load(cls, config_path: Optional[str] = None, env: Optional[Dict[str, str]] = None) -> "DigestConfig":
        """Defaults, then the YAML file, then environment variables."""
        if env is None:
            load_dotenv()
            env = dict(os.environ)

        values: Dict[str, Any] = {}
        paths = [config_path] if config_path else ([env["DIGEST_CONFIG"]] if env.get("DIGEST_CONFIG") else CONFIG_SEARCH_PATHS)
        for path in paths:
            loaded = load_yaml_options(path)
            if loaded:
                values.update(loaded)
                break

        for env_name, field_name in ENV_OPTIONS.items():
            if env.get(env_name):
                values[field_name] = env[env_name]
        return cls(**values)

def load_yaml_options(path: str) -> Dict[str, Any]:
    if not path or not os.path.exists(path):
        return {}
    known = {f.name for f in fields(DigestConfig)}
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        log.warning(f"Failed to load config {path}: {e}")
        return {}
    if not isinstance(data, dict):
        log.warning(f"Ignoring config {path}: expected a mapping")
        return {}
    options = {}
    for key, value in data.items():
        name = str(key).lower()
        if name not in known:
            log.warning(f"Unknown option '{key}' in {path}")
            continue
        if name == "image_src_attributes" and isinstance(value, list):
            value = tuple(str(v) for v in value)
        options[name] = value
    log.info(f"Loaded {len(options)} options from {path}")
    return options

def _as_number(name: str, value, kind):
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Option {name} must be numeric, got {value!r}")
