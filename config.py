import os

# ---------- Database ----------
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./tracechain.db")

# ---------- Ledger ----------
RPC_URL = os.getenv("RPC_URL", "http://127.0.0.1:8545")
PRIVATE_KEY = os.getenv("PRIVATE_KEY", "")
CONTRACT_ADDRESS = os.getenv("CONTRACT_ADDRESS", "")
LEDGER_WRITE_TIMEOUT = float(os.getenv("LEDGER_WRITE_TIMEOUT", "120"))
LEDGER_POLL_LATENCY = float(os.getenv("LEDGER_POLL_LATENCY", "0.5"))

# ---------- Content store ----------
IPFS_UPLOAD_URL = os.getenv("IPFS_UPLOAD_URL", "http://127.0.0.1:5001/api/v0")
IPFS_GATEWAY_URL = os.getenv("IPFS_GATEWAY_URL", "http://127.0.0.1:8080")
CONTENT_STORE_TIMEOUT = float(os.getenv("CONTENT_STORE_TIMEOUT", "15"))

# ---------- Reconciler ----------
RECONCILER_ENABLED = os.getenv("RECONCILER_ENABLED", "1") not in ("0", "false", "no")
RECONCILER_POLL_INTERVAL = float(os.getenv("RECONCILER_POLL_INTERVAL", "2"))
RECONCILER_BACKOFF_MAX = float(os.getenv("RECONCILER_BACKOFF_MAX", "60"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
