# stats_engine/config.py
import logging
import os

from dotenv import load_dotenv

# Load .env file (DATABASE_URL, engine defaults, LOG_LEVEL)
load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./experiments.db")

# Monte Carlo
MC_SAMPLES = int(os.getenv("STATS_MC_SAMPLES", "10000"))
_seed = os.getenv("STATS_RANDOM_SEED")
RANDOM_SEED = int(_seed) if _seed else None

# Bayesian decision thresholds
BAYES_WINNER_THRESHOLD = float(os.getenv("BAYES_WINNER_THRESHOLD", "0.95"))
BAYES_LIKELY_THRESHOLD = float(os.getenv("BAYES_LIKELY_THRESHOLD", "0.80"))
BAYES_MIN_SAMPLE_SIZE = int(os.getenv("BAYES_MIN_SAMPLE_SIZE", "100"))

# Group sequential design
SEQUENTIAL_NUM_CHECKS = int(os.getenv("SEQUENTIAL_NUM_CHECKS", "5"))
SEQUENTIAL_ALPHA = float(os.getenv("SEQUENTIAL_ALPHA", "0.05"))

# Bandits
BANDIT_EPSILON = float(os.getenv("BANDIT_EPSILON", "0.1"))
BANDIT_REALLOCATION_INTERVAL = int(os.getenv("BANDIT_REALLOCATION_INTERVAL", "10"))
BANDIT_REGRET_INTERVAL = int(os.getenv("BANDIT_REGRET_INTERVAL", "50"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def configure_logging(level: str = None) -> None:
    """
    Set up root logging for processes that embed the engine.
    Library code only ever calls logging.getLogger(__name__).
    """
    level = (level or LOG_LEVEL).upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    # basicConfig is a no-op once the root logger has handlers
    logging.getLogger("stats_engine").setLevel(level)
