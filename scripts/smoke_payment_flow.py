#!/usr/bin/env python3
"""
Smoke test against running services: gateway OTP handshake and txn refs,
then one simulated quick payment through the payment UI host.
Run with: python scripts/smoke_payment_flow.py
Requires: python -m gateway.app  and  python -m payment_ui.app
Override: GATEWAY_URL=http://localhost:5000 PAYMENT_UI_URL=http://localhost:9992
"""
import os
import sys
import time

import requests

GATEWAY = os.environ.get("GATEWAY_URL", "http://localhost:5000").rstrip("/")
PAYMENT_UI = os.environ.get("PAYMENT_UI_URL", "http://localhost:9992").rstrip("/")
MOBILE = os.environ.get("SMOKE_MOBILE", "9876543210")
DEMO_OTP = os.environ.get("SMOKE_OTP", "123456")


def _check_health(name: str, base: str) -> bool:
    try:
        r = requests.get(f"{base}/health", timeout=2)
    except requests.RequestException as e:
        print(f"  -> [WARN] {name} not reachable: {e}")
        return False
    if r.status_code == 200:
        print(f"  -> {name} is up (HTTP 200).")
        return True
    print(f"  -> [WARN] {name} /health returned {r.status_code}.")
    return False


def main():
    print("=" * 60)
    print("  Smoke: gateway OTP + txn ref, then a quick payment via the UI host")
    print("=" * 60)
    print()
    print("[Parameters]")
    print(f"  Gateway URL    : {GATEWAY}")
    print(f"  Payment UI URL : {PAYMENT_UI}")
    print(f"  Mobile         : {MOBILE}")
    print()

    print("[Step 1/5] Checking service health...")
    if not (_check_health("gateway", GATEWAY) and _check_health("payment_ui", PAYMENT_UI)):
        print("  Start: python -m gateway.app  and  python -m payment_ui.app")
        sys.exit(1)
    print()

    print("[Step 2/5] OTP handshake (send, then verify)...")
    r = requests.post(f"{GATEWAY}/api/send-otp", json={"mobile": MOBILE}, timeout=15)
    print(f"  -> send-otp HTTP {r.status_code}: {r.json()}")
    if r.status_code != 200:
        sys.exit(1)
    if "demo mode" not in r.json().get("message", ""):
        print("  -> Real SMS sent; skipping verify (code unknown to this script).")
    else:
        r = requests.post(f"{GATEWAY}/api/verify-otp", json={"mobile": MOBILE, "otp": DEMO_OTP}, timeout=5)
        print(f"  -> verify-otp HTTP {r.status_code}: {r.json()}")
        if r.status_code != 200:
            sys.exit(1)
    print()

    print("[Step 3/5] Issuing a transaction reference...")
    r = requests.post(f"{GATEWAY}/api/create-transaction", json={"amount": "150"}, timeout=5)
    print(f"  -> create-transaction HTTP {r.status_code}: {r.json()}")
    print()

    print("[Step 4/5] Starting a quick payment (Swiggy, ₹150, Google Pay)...")
    r = requests.post(f"{PAYMENT_UI}/api/payments",
                      json={"methodId": "gpay", "amount": "150", "merchant": "Swiggy"}, timeout=10)
    print(f"  -> HTTP {r.status_code}")
    if r.status_code != 202:
        print(f"  -> FAIL: {r.text}")
        sys.exit(1)

    final = None
    deadline = time.time() + 10
    while time.time() < deadline:
        snap = requests.get(f"{PAYMENT_UI}/api/payments/current", timeout=5).json()
        attempt = snap.get("attempt")
        if attempt:
            print(f"     {attempt['status']:<10} {attempt['step']:<30} Ref: {attempt['maskedReference']}")
            if attempt["transaction"]:
                final = attempt
                break
        time.sleep(0.5)
    if final is None:
        print("  -> FAIL: payment did not reach a terminal state within 10s")
        sys.exit(1)
    print(f"  -> Terminal status: {final['status']} (ref {final['reference']})")
    print()

    print("[Step 5/5] Reading the transaction ledger...")
    r = requests.get(f"{PAYMENT_UI}/api/transactions", params={"search": "swiggy"}, timeout=5)
    body = r.json()
    print(f"  -> {body['summary']['count']} matching transaction(s); summary: {body['summary']}")
    if final.get("serverReference"):
        r = requests.get(f"{GATEWAY}/api/transactions/{final['serverReference']}", timeout=5)
        print(f"  -> Gateway record: {r.json()}")

    print()
    print("=" * 60)
    print("  SMOKE PASSED")
    print("=" * 60)


if __name__ == "__main__":
    main()
