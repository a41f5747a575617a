import pytest
from omegaconf import OmegaConf

from pskernel.configs import get_envs, get_policy, load_policy, load_policy_config
from pskernel.optimizers import AdaGrad


class TestPolicyConfig:
    def test_default_config(self):
        cfg = load_policy_config()
        assert cfg.name == "adagrad"
        assert get_policy(cfg) == AdaGrad()

    def test_overrides(self):
        policy = load_policy(overrides=["learning_rate=0.5", "seed=4"])
        assert policy.learning_rate == 0.5
        assert policy.seed == 4

    def test_unknown_keys_are_ignored(self):
        cfg = OmegaConf.create({"name": "AdaGrad", "epsilon": 1e-6, "foo": 1})
        assert get_policy(cfg).epsilon == 1e-6

    def test_plain_mapping(self):
        assert get_policy({"learning_rate": 0.2}).learning_rate == 0.2

    def test_unknown_policy(self):
        with pytest.raises(ValueError):
            get_policy({"name": "adam"})

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"learning_rate": -1.0},
            {"epsilon": 0.0},
            {"mom_decay_rate": 1.0},
            {"show_decay_rate": 1.5},
            {"g2sum_decay_rate": -0.1},
            {"initial_range": -0.1},
        ],
    )
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            AdaGrad(**kwargs)

    def test_policy_is_read_only(self):
        policy = AdaGrad()
        with pytest.raises(Exception):
            policy.learning_rate = 1.0


class TestEnvs:
    def test_missing_env_raises(self, monkeypatch):
        monkeypatch.delenv("PSKERNEL_TEST_ENV", raising=False)
        with pytest.raises(ValueError):
            get_envs(["PSKERNEL_TEST_ENV"])
        assert get_envs(["PSKERNEL_TEST_ENV"], ignore=True) == {
            "PSKERNEL_TEST_ENV": None
        }

    def test_present_env(self, monkeypatch):
        monkeypatch.setenv("PSKERNEL_TEST_ENV", "3")
        assert get_envs(["PSKERNEL_TEST_ENV"]) == {"PSKERNEL_TEST_ENV": "3"}

