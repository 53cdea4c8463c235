"""Configuration loader for model settings."""

import copy

import yaml
from pathlib import Path

from .trip_generation import TripPurpose, AttractionRates


class ModelConfig:
    """Load and manage model configuration from a YAML settings file."""

    def __init__(self, settings_path=None):
        """
        Initialize configuration from a settings file.

        Parameters:
        -----------
        settings_path : Path or str, optional
            Path to the settings YAML file. If None, uses default_settings.yaml
            shipped with the package.
        """
        if settings_path is None:
            settings_path = default_settings_path()

        self.settings_path = Path(settings_path)
        self._load_settings()

    @classmethod
    def from_dict(cls, settings: dict, base: "ModelConfig" = None) -> "ModelConfig":
        """
        Build a configuration from a dictionary.

        Top-level keys in ``settings`` replace the ones from ``base`` (the
        packaged defaults when ``base`` is None). Nested ``solver`` and
        ``calibration`` blocks are merged key by key.
        """
        if base is None:
            base = cls()
        merged = copy.deepcopy(base.settings)
        for key, value in settings.items():
            if key in ("solver", "calibration") and isinstance(value, dict):
                merged.setdefault(key, {}).update(value)
            else:
                merged[key] = value

        instance = cls.__new__(cls)
        instance.settings_path = base.settings_path
        instance.settings = merged
        return instance

    def _load_settings(self):
        """Load settings from YAML file."""
        if not self.settings_path.exists():
            raise FileNotFoundError(f"Settings file not found: {self.settings_path}")

        with open(self.settings_path, 'r') as f:
            self.settings = yaml.safe_load(f)

    def _get(self, *keys):
        node = self.settings
        for i, key in enumerate(keys):
            if not isinstance(node, dict) or key not in node:
                raise KeyError(f"Missing setting '{'.'.join(keys[:i + 1])}' in {self.settings_path}")
            node = node[key]
        return node

    # -------------------------------------------------------------------------
    # Trip Generation
    # -------------------------------------------------------------------------
    @property
    def purposes(self):
        """Get the list of trip purposes to model."""
        return [TripPurpose.coerce(p) for p in self._get('purposes')]

    @property
    def predictors(self):
        """Get the household-level predictor names used by the regressions."""
        return list(self._get('predictors'))

    @property
    def income_policy(self):
        """Get the survey policy for missing or non-positive income."""
        return self._get('income_policy')

    @property
    def zone_missing_policy(self):
        """Get the zone policy for missing or non-positive predictor data."""
        return self._get('zone_missing_policy')

    @property
    def fit_missing(self):
        """Get the missing-data handling for the OLS fit."""
        return self._get('fit_missing')

    @property
    def production_floor(self):
        """Get the optional floor applied to productions before balancing."""
        return self.settings.get('production_floor')

    @property
    def attraction_rates(self):
        """Get attraction rates by purpose as an AttractionRates object."""
        return AttractionRates.from_mapping(self._get('attraction_rates'))

    # -------------------------------------------------------------------------
    # Trip Distribution
    # -------------------------------------------------------------------------
    @property
    def decay_rates(self):
        """Get the exponential friction decay rate by purpose."""
        return {TripPurpose.coerce(p): float(m) for p, m in self._get('decay_rates').items()}

    @property
    def solver_tolerance(self):
        """Get the gravity model convergence tolerance."""
        return float(self._get('solver', 'tolerance'))

    @property
    def solver_max_iterations(self):
        """Get the gravity model iteration cap."""
        return int(self._get('solver', 'max_iterations'))

    @property
    def calibration(self):
        """Get decay calibration settings."""
        return dict(self.settings.get('calibration', {}))


def default_settings_path():
    """Path of the settings file shipped with the package."""
    return Path(__file__).parent / 'settings' / 'default_settings.yaml'


def get_model_config(settings_path=None):
    """
    Get configuration from a settings file.

    Parameters:
    -----------
    settings_path : Path or str, optional
        Path to the settings YAML file. If None, uses the packaged defaults.

    Returns:
    --------
    ModelConfig
        Configuration object
    """
    return ModelConfig(settings_path)
