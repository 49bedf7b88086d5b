import pytest

from wsa_sweep.config import SweepConfig

# 64 samples at 6.4 MS/s gives 100 kHz bins with no decimation.
SMALL_SPP = 64
SMALL_SAMPLE_RATE_HZ = 6_400_000
SMALL_RBW_HZ = 100_000


@pytest.fixture
def small_config() -> SweepConfig:
    cfg = SweepConfig()
    cfg.samples_per_packet = SMALL_SPP
    cfg.rbw_hz = SMALL_RBW_HZ
    cfg.read_timeout_ms = 50
    cfg.retry_backoff_ms = 0
    return cfg
