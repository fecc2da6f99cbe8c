"""
JMIX: Verify Payload Hash

Re-computes the payload digest of a <envelope_id>.JMIX directory and
compares it with manifest.security.payload_hash. Sealed envelopes need
the recipient private key; nothing is written into the envelope.

Exit status is 0 when the payload matches, 1 on mismatch and 2 on error.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from jmix import EnvelopePipeline, JmixError


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Verify the payload hash of a JMIX envelope")
    parser.add_argument("envelope", type=Path, help="Path to an <envelope_id>.JMIX directory")
    parser.add_argument("--private-key", help="Recipient private key (base64), for sealed envelopes")
    parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        result = asyncio.run(EnvelopePipeline().verify_payload_hash(args.envelope, args.private_key))
    except JmixError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print(f"Mode:     {result.mode}")
        print(f"Expected: {result.expected}")
        print(f"Computed: {result.computed}")
        print("Payload hash OK" if result.ok else "Payload hash MISMATCH")
    return 0 if result.ok else 1


if __name__ == "__main__":
    sys.exit(main())
