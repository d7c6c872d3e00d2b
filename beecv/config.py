import logging
import yaml
from dataclasses import dataclass, field, fields, asdict
from beecv.errors import ModelSpecificationError

@dataclass(frozen=True)
class TraitColumns:
    """
    Column names of the observation table
    """
    species: str = "species"
    site: str = "transect"
    block: str = "block"
    locality: str = "locality"
    itd: str = "itd"
    partner: str = "plant"

    def required(self):
        return [self.species, self.site, self.block, self.locality, self.itd, self.partner]

@dataclass
class AnalysisConfig:
    columns: TraitColumns = field(default_factory=TraitColumns)
    sep: str = "\t"
    min_obs: int = 20
    subsample_size: int = 20
    seed: int = 1
    ddof: int = 0
    predictor: str = "n_sites"
    log_predictor: bool = False
    num_warmup: int = 1000
    num_samples: int = 1000
    num_chains: int = 4
    chain_method: str = "sequential"
    target_accept: float = 0.95
    max_rhat: float = 1.05
    min_ess: float = 100
    credible_interval: float = 90
    prior_draws: int = 50000
    signal_method: str = "conditional"
    signal_epsilon: float = 0.01
    max_evidence_ratio: float = None
    outdir: str = "."

    def validate(self):
        if self.min_obs < self.subsample_size:
            raise ModelSpecificationError("min_obs ({}) must not be smaller than subsample_size ({})".format(self.min_obs, self.subsample_size))
        if self.subsample_size < 2:
            raise ModelSpecificationError("subsample_size must be at least 2")
        if self.ddof not in (0, 1):
            raise ModelSpecificationError("ddof must be 0 or 1")
        if not 0 < self.credible_interval < 100:
            raise ModelSpecificationError("credible_interval must be a percentage within (0, 100)")
        if self.signal_method not in ("conditional", "mass", "kde"):
            raise ModelSpecificationError("signal_method must be one of conditional, mass, kde")
        if not 0 < self.signal_epsilon < 1:
            raise ModelSpecificationError("signal_epsilon must lie within (0, 1)")
        return self

def load_config(config_path=None, **overrides):
    """
    Merge a YAML config file and keyword overrides over the defaults
    """
    config_data = {}
    if config_path is not None:
        with open(config_path, 'r') as f:
            user_config = yaml.safe_load(f)
        if user_config: config_data.update(user_config)
        logging.info("Loaded configuration from {}".format(config_path))
    config_data.update({k: v for k, v in overrides.items() if v is not None})
    known = {f.name for f in fields(AnalysisConfig)}
    unknown = sorted(set(config_data) - known)
    if unknown:
        raise ModelSpecificationError("Unknown configuration keys: {}".format(", ".join(unknown)))
    columns = config_data.pop("columns", None) or {}
    if isinstance(columns, dict):
        column_names = {f.name for f in fields(TraitColumns)}
        bad = sorted(set(columns) - column_names)
        if bad:
            raise ModelSpecificationError("Unknown column roles: {}".format(", ".join(bad)))
        columns = TraitColumns(**columns)
    config = AnalysisConfig(columns=columns, **config_data)
    return config.validate()

def dump_config(config, output="Config.yaml"):
    with open(output, 'w') as f:
        yaml.safe_dump(asdict(config), f, sort_keys=False)
