#!/usr/bin/env python3
"""Point the demo Twilio number at this server.

Usage:
    python scripts/configure_twilio.py                     # <Gather> webhooks at BASE_URL
    python scripts/configure_twilio.py --stream            # Pipecat media stream via /twiml
    python scripts/configure_twilio.py --base-url https://demo.example.com
    python scripts/configure_twilio.py --dry-run           # print what would change
"""

import argparse
import os
import sys

import httpx
from dotenv import load_dotenv

API_BASE = "https://api.twilio.com/2010-04-01"


def webhook_params(base_url: str, stream: bool = False) -> dict[str, str]:
    base_url = base_url.rstrip("/")
    return {
        "VoiceUrl": f"{base_url}/twiml" if stream else f"{base_url}/twilio/voice",
        "VoiceMethod": "POST",
        "StatusCallback": f"{base_url}/twilio/status",
        "StatusCallbackMethod": "POST",
    }


def find_number_sid(client: httpx.Client, account_sid: str, phone_number: str) -> str:
    resp = client.get(
        f"{API_BASE}/Accounts/{account_sid}/IncomingPhoneNumbers.json",
        params={"PhoneNumber": phone_number},
    )
    resp.raise_for_status()
    numbers = resp.json().get("incoming_phone_numbers", [])
    if not numbers:
        raise SystemExit(f"{phone_number} is not a number on account {account_sid}")
    return numbers[0]["sid"]


def main():
    load_dotenv()
    parser = argparse.ArgumentParser(description="Configure the Twilio number's voice webhooks")
    parser.add_argument("--base-url", default=os.getenv("BASE_URL", ""), help="public server URL")
    parser.add_argument("--stream", action="store_true", help="use the Pipecat media stream instead of <Gather>")
    parser.add_argument("--dry-run", action="store_true", help="print the update without sending it")
    args = parser.parse_args()

    account_sid = os.getenv("TWILIO_ACCOUNT_SID", "")
    auth_token = os.getenv("TWILIO_AUTH_TOKEN", "")
    phone_number = os.getenv("TWILIO_PHONE_NUMBER", "")
    missing = [
        name for name, value in [
            ("BASE_URL", args.base_url),
            ("TWILIO_ACCOUNT_SID", account_sid),
            ("TWILIO_AUTH_TOKEN", auth_token),
            ("TWILIO_PHONE_NUMBER", phone_number),
        ] if not value
    ]
    if missing:
        print(f"Missing: {', '.join(missing)}", file=sys.stderr)
        sys.exit(1)

    params = webhook_params(args.base_url, stream=args.stream)
    if args.dry_run:
        for key, value in params.items():
            print(f"{key}={value}")
        return

    with httpx.Client(auth=(account_sid, auth_token), timeout=15.0) as client:
        number_sid = find_number_sid(client, account_sid, phone_number)
        resp = client.post(
            f"{API_BASE}/Accounts/{account_sid}/IncomingPhoneNumbers/{number_sid}.json",
            data=params,
        )
        resp.raise_for_status()

    print(f"{phone_number} now answers at {params['VoiceUrl']}")


if __name__ == "__main__":
    main()
