import os
from dotenv import load_dotenv

# Load environment variables from project root .env
env_path = os.path.join(os.path.dirname(__file__), "../.env")
load_dotenv(env_path)


def _env_list(name: str, default: list) -> list:
    raw = os.getenv(name, "")
    items = [item.strip() for item in raw.split(",") if item.strip()]
    return items or list(default)


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    # ═══════════════════════════════════════════════════════════════════
    # MINTFORGE CONFIGURATION (env-based)
    # ═══════════════════════════════════════════════════════════════════

    # Console output off for scripted runs
    SILENT_MODE = _env_bool("SILENT_MODE", False)

    # --- Network endpoints (ordered) ---
    RPC_ENDPOINTS = _env_list(
        "MINTFORGE_RPC_ENDPOINTS",
        [
            "https://api.mainnet-beta.solana.com",
            "https://rpc.ankr.com/solana",
            "https://solana-mainnet.g.alchemy.com/v2/demo",
        ],
    )
    ENDPOINT_PROBE_TIMEOUT_S = _env_float("ENDPOINT_PROBE_TIMEOUT_S", 2.5)
    ENDPOINT_MAX_CYCLES = _env_int("ENDPOINT_MAX_CYCLES", 3)
    ENDPOINT_BACKOFF_BASE_S = _env_float("ENDPOINT_BACKOFF_BASE_S", 1.0)
    RPC_REQUEST_TIMEOUT_S = _env_float("RPC_REQUEST_TIMEOUT_S", 10.0)
    # Consecutive failed status lookups before switching endpoints
    RPC_FAILOVER_AFTER = _env_int("RPC_FAILOVER_AFTER", 3)

    # --- Signer pre-flight ---
    MIN_BALANCE_SOL = _env_float("MIN_BALANCE_SOL", 0.01)

    # --- Storage providers ---
    PINATA_API_KEY = os.getenv("PINATA_API_KEY", "")
    PINATA_SECRET_KEY = os.getenv("PINATA_SECRET_KEY", "")
    NFT_STORAGE_TOKEN = os.getenv("NFT_STORAGE_TOKEN", "")
    WEB3_STORAGE_TOKEN = os.getenv("WEB3_STORAGE_TOKEN", "")
    STORACHA_TOKEN = os.getenv("STORACHA_TOKEN", "")

    UPLOAD_TIMEOUT_S = _env_float("UPLOAD_TIMEOUT_S", 30.0)
    UPLOAD_PRIMARY_ATTEMPTS = _env_int("UPLOAD_PRIMARY_ATTEMPTS", 3)
    UPLOAD_FALLBACK_ATTEMPTS = _env_int("UPLOAD_FALLBACK_ATTEMPTS", 2)
    UPLOAD_BACKOFF_BASE_S = _env_float("UPLOAD_BACKOFF_BASE_S", 2.0)

    # Public gateways used for the accessibility quorum
    IPFS_PUBLIC_GATEWAYS = _env_list(
        "IPFS_PUBLIC_GATEWAYS",
        [
            "https://gateway.pinata.cloud/ipfs/",
            "https://cloudflare-ipfs.com/ipfs/",
            "https://ipfs.io/ipfs/",
            "https://gateway.ipfs.io/ipfs/",
            "https://dweb.link/ipfs/",
        ],
    )
    GATEWAY_PROBE_TIMEOUT_S = _env_float("GATEWAY_PROBE_TIMEOUT_S", 4.0)
    ACCESSIBILITY_THRESHOLD = _env_float("ACCESSIBILITY_THRESHOLD", 0.70)
    VERIFY_ROUNDS = _env_int("VERIFY_ROUNDS", 3)
    VERIFY_ROUND_DELAY_S = _env_float("VERIFY_ROUND_DELAY_S", 5.0)
    REQUIRE_VERIFIED_UPLOADS = _env_bool("REQUIRE_VERIFIED_UPLOADS", True)

    # --- Confirmation ---
    CONFIRM_POLL_INTERVAL_S = _env_float("CONFIRM_POLL_INTERVAL_S", 2.0)
    CONFIRM_TIMEOUT_S = _env_float("CONFIRM_TIMEOUT_S", 90.0)
    CONFIRM_MAX_RETRIES = _env_int("CONFIRM_MAX_RETRIES", 3)
    CONFIRM_BACKOFF_BASE_S = _env_float("CONFIRM_BACKOFF_BASE_S", 1.0)
    # Signatures that stay unseen this long are treated as dropped
    CONFIRM_DROP_AFTER_S = _env_float("CONFIRM_DROP_AFTER_S", 30.0)

    # --- Listing service ---
    LISTING_BASE_URL = os.getenv("LISTING_BASE_URL", "https://api.dexscreener.com/latest/dex/tokens")
    LISTING_POLL_INTERVAL_S = _env_float("LISTING_POLL_INTERVAL_S", 30.0)
    LISTING_TIMEOUT_S = _env_float("LISTING_TIMEOUT_S", 300.0)
    LISTING_REQUEST_TIMEOUT_S = _env_float("LISTING_REQUEST_TIMEOUT_S", 10.0)

    # --- Persistence ---
    DATA_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "../data"))
    DB_PATH = os.getenv("MINTFORGE_DB_PATH", os.path.join(DATA_DIR, "mintforge_runs.db"))

    @classmethod
    def snapshot(cls) -> dict:
        """Plain dict of every upper-case setting (secrets masked)."""
        values = {}
        for key in dir(cls):
            if not key.isupper():
                continue
            value = getattr(cls, key)
            if any(tag in key for tag in ("KEY", "TOKEN")) and value:
                value = "***"
            values[key] = value
        return values
