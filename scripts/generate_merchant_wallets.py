#!/usr/bin/env python3
"""
Generate throwaway merchant wallets for local testing.

Prints a BSC (EVM) and a Solana address ready to paste into .env.
"""

from eth_account import Account
from solders.keypair import Keypair

print("Generating merchant test wallets...")
print("=" * 60)

evm = Account.create()
solana = Keypair()

print("\nBSC address:")
print(f"   {evm.address}")
print("BSC private key:")
print(f"   {evm.key.hex()}\n")

print("Solana address:")
print(f"   {solana.pubkey()}")
print("Solana keypair (base58):")
print(f"   {solana}\n")

print("=" * 60)
print("\nAdd to .env:\n")
print(f"BSC_MERCHANT_ADDRESS={evm.address}")
print(f"SOLANA_MERCHANT_ADDRESS={solana.pubkey()}")

print("\nDevnet SOL faucet: https://faucet.solana.com/")
print("Then run: python scripts/init_ledger.py")
print("=" * 60)
