from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from somnoview.chunk_cache import CacheConfig
from somnoview.orchestrator import OrchestratorSettings


@dataclass
class ViewerConfig:
    api_base_url: str = "http://localhost:5000/api"
    api_timeout_s: float = 600.0
    api_connect_timeout_s: float = 10.0
    cache_snap_s: float = 5.0
    cache_max_samples: int = 4_000_000
    cache_max_mb: float | None = 64.0
    histogram_default_bins: int = 8
    histogram_min_bins: int = 3
    histogram_max_bins: int = 20
    histogram_separate_types: bool = True
    focus_padding_s: float = 10.0
    max_points: int = 20_000
    channels: tuple[str, ...] = ()
    ini_path: Path | None = None

    @classmethod
    def load(cls, ini_path: str | Path | None = None) -> "ViewerConfig":
        cfg = cls()
        path = Path(ini_path or "somnoview.ini")
        if path.exists():
            import configparser

            parser = configparser.ConfigParser()
            parser.read(path)
            section = parser["api"] if "api" in parser else None
            if section:
                cfg.api_base_url = section.get("base_url", fallback=cfg.api_base_url)
                cfg.api_timeout_s = section.getfloat("timeout_s", fallback=cfg.api_timeout_s)
                cfg.api_connect_timeout_s = section.getfloat(
                    "connect_timeout_s", fallback=cfg.api_connect_timeout_s
                )

            cache_section = parser["cache"] if "cache" in parser else None
            if cache_section:
                cfg.cache_snap_s = cache_section.getfloat("snap_s", fallback=cfg.cache_snap_s)
                cfg.cache_max_samples = cache_section.getint(
                    "max_samples", fallback=cfg.cache_max_samples
                )
                max_mb = cache_section.getfloat("max_mb", fallback=cfg.cache_max_mb or 0.0)
                cfg.cache_max_mb = max_mb if max_mb > 0 else None

            hist_section = parser["histogram"] if "histogram" in parser else None
            if hist_section:
                cfg.histogram_default_bins = hist_section.getint(
                    "default_bins", fallback=cfg.histogram_default_bins
                )
                cfg.histogram_min_bins = hist_section.getint("min_bins", fallback=cfg.histogram_min_bins)
                cfg.histogram_max_bins = hist_section.getint("max_bins", fallback=cfg.histogram_max_bins)
                cfg.histogram_separate_types = hist_section.getboolean(
                    "separate_types", fallback=cfg.histogram_separate_types
                )

            nav_section = parser["navigation"] if "navigation" in parser else None
            if nav_section:
                cfg.focus_padding_s = nav_section.getfloat(
                    "focus_padding_s", fallback=cfg.focus_padding_s
                )
                cfg.max_points = nav_section.getint("max_points", fallback=cfg.max_points)

            ui_section = parser["ui"] if "ui" in parser else None
            if ui_section:
                raw = ui_section.get("channels", fallback="")
                names = [part.strip() for part in raw.split(",") if part.strip()]
                # Preserve unique entries while maintaining relative order
                cfg.channels = tuple(dict.fromkeys(names))
        cfg.ini_path = path
        return cfg

    def cache_config(self) -> CacheConfig:
        return CacheConfig(
            snap_s=self.cache_snap_s,
            max_samples=max(1, self.cache_max_samples),
            max_bytes=(self.cache_max_mb * 1024 * 1024) if self.cache_max_mb else None,
        )

    def transport_kwargs(self) -> dict:
        return {
            "timeout_s": self.api_timeout_s,
            "connect_timeout_s": self.api_connect_timeout_s,
        }

    def orchestrator_settings(self) -> OrchestratorSettings:
        low = max(1, self.histogram_min_bins)
        high = max(low, self.histogram_max_bins)
        return OrchestratorSettings(
            default_bins=max(low, min(high, self.histogram_default_bins)),
            min_bins=low,
            max_bins=high,
            separate_types=self.histogram_separate_types,
            focus_padding_s=max(0.0, self.focus_padding_s),
            max_points=max(1, self.max_points),
        )

    def save(self) -> None:
        if self.ini_path is None:
            return
        import configparser

        parser = configparser.ConfigParser()
        parser["api"] = {
            "base_url": self.api_base_url,
            "timeout_s": f"{self.api_timeout_s:.1f}",
            "connect_timeout_s": f"{self.api_connect_timeout_s:.1f}",
        }
        parser["cache"] = {
            "snap_s": f"{self.cache_snap_s:.3f}",
            "max_samples": str(self.cache_max_samples),
            "max_mb": f"{self.cache_max_mb or 0}",
        }
        parser["histogram"] = {
            "default_bins": str(self.histogram_default_bins),
            "min_bins": str(self.histogram_min_bins),
            "max_bins": str(self.histogram_max_bins),
            "separate_types": "true" if self.histogram_separate_types else "false",
        }
        parser["navigation"] = {
            "focus_padding_s": f"{self.focus_padding_s:.3f}",
            "max_points": str(self.max_points),
        }
        parser["ui"] = {
            "channels": ",".join(dict.fromkeys(self.channels)),
        }
        with self.ini_path.open("w") as fh:
            parser.write(fh)
