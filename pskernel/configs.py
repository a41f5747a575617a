"""
Copyright (c) 2025 Ayoub Ghriss and contributors
Licensed under CC BY-NC 4.0 (see LICENSE or https://creativecommons.org/licenses/by-nc/4.0/)
Non-commercial use only; contact us for commercial licensing.
"""

import inspect
import os
from pathlib import Path
from typing import Dict, List, Sequence

from hydra import compose, initialize_config_dir
from omegaconf import DictConfig, OmegaConf

from pskernel.optimizers import AdaGrad


CONFIG_DIR = Path(__file__).resolve().parent / "config"


def _filter_kwargs(target, kwargs, exclude=None):
    if exclude is None:
        exclude = ()
    opt_args = list(inspect.signature(target).parameters.keys())
    return {
        k: v for k, v in kwargs.items() if k in opt_args and k not in exclude
    }


def get_envs(env_names: List[str], ignore=False) -> Dict[str, str]:
    env_values = {}
    for env_n in env_names:
        env_val = os.environ.get(env_n, None)
        if not ignore and env_val is None:
            raise ValueError(f"env variable {env_n} is not set")
        env_values[env_n] = env_val
    return env_values


def get_policy(policy_cfg) -> AdaGrad:
    """Build the optimizer policy from a config node or a plain mapping."""
    if isinstance(policy_cfg, DictConfig):
        policy_cfg = OmegaConf.to_container(policy_cfg, resolve=True)
    name = str(policy_cfg.get("name", "adagrad")).lower()
    cls_map = {
        "adagrad": AdaGrad,
    }
    policy_cls = cls_map.get(name, None)
    if policy_cls is None:
        raise ValueError(
            f"Unknown optimizer policy: {name}, allowed: {list(cls_map.keys())}"
        )
    return policy_cls(**_filter_kwargs(policy_cls, policy_cfg))


def load_policy_config(
    config_name: str = "adagrad", overrides: Sequence[str] = ()
) -> DictConfig:
    with initialize_config_dir(version_base=None, config_dir=str(CONFIG_DIR)):
        return compose(config_name=config_name, overrides=list(overrides))


def load_policy(
    config_name: str = "adagrad", overrides: Sequence[str] = ()
) -> AdaGrad:
    return get_policy(load_policy_config(config_name, overrides))
