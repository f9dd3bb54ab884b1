import os

from eth_account import Account
from solders.keypair import Keypair

# Set dummy environment variables for testing
# This must run before chainsettle.config is imported by any test
os.environ.setdefault("BSC_MERCHANT_ADDRESS", Account.create().address)
os.environ.setdefault("SOLANA_MERCHANT_ADDRESS", str(Keypair().pubkey()))
os.environ.setdefault("SIMULATE_QUOTE_LATENCY", "false")
os.environ.setdefault("TPE_NOTIFY_URL", "")
os.environ.setdefault("LOG_FORMAT", "text")
