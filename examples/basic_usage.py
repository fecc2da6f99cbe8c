"""
JMIX: Basic Usage Example

Packages a directory of DICOM files twice: once with a plaintext payload
and once sealed for a recipient. The sealed envelope is then opened with
the recipient's private key and both envelopes are verified.

    python examples/basic_usage.py <dicom_dir> [output_dir]
"""

import asyncio
import logging
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from jmix import EnvelopePipeline, JmixError, SchemaValidator, generate_keypair, load_config
from jmix.config import schema_path_from_env

CONFIG_FILE = Path(__file__).parent / "sample_config.json"


async def run(source_dir: Path, output_dir: Path) -> None:
    config = load_config(CONFIG_FILE)
    pipeline = EnvelopePipeline(validator=SchemaValidator(schema_path_from_env()))

    print("=" * 50)
    print("  JMIX: Secure Imaging Envelopes")
    print("=" * 50)

    # Plain envelope: payload/ stays readable on disk
    envelope = await pipeline.build_assembled_envelope(source_dir, config)
    plain_dir = await pipeline.package_plain_envelope(envelope, output_dir)
    dicom = envelope.metadata["dicom"]
    print(f"\nPlain envelope:  {plain_dir}")
    print(f"  Instances:     {dicom['instance_count']} in {dicom['series_count']} series")
    print(f"  Modalities:    {', '.join(dicom['modalities'])}")
    print(f"  Payload hash:  {envelope.payload_digest}")

    # Sealed envelope: only the recipient's private key can open it
    private_key, public_key = generate_keypair()
    print(f"\nRecipient public key:  {public_key}")
    print(f"Recipient private key: {private_key}  (keep secret)")

    envelope = await pipeline.build_assembled_envelope(source_dir, config)
    sealed_dir = await pipeline.seal_envelope(envelope, output_dir, public_key)
    encryption = envelope.manifest["security"]["encryption"]
    print(f"\nSealed envelope: {sealed_dir}")
    print(f"  Algorithm:     {encryption['algorithm']}")
    print(f"  Ephemeral key: {encryption['ephemeral_public_key']}")

    # Integrity can be checked without unpacking anything into the envelope
    for path, key in ((plain_dir, None), (sealed_dir, private_key)):
        result = await pipeline.verify_payload_hash(path, key)
        status = "OK" if result.ok else "MISMATCH"
        print(f"\nVerify {path.name} ({result.mode}): {status}")

    payload_dir = await pipeline.open_envelope(sealed_dir, private_key)
    print(f"\nOpened payload:  {payload_dir}")
    for f in sorted(p for p in (payload_dir / "dicom").rglob("*") if p.is_file()):
        print(f"  {f.relative_to(payload_dir)}")


def main():
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(2)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    source_dir = Path(sys.argv[1])
    output_dir = Path(sys.argv[2]) if len(sys.argv) > 2 else Path("./jmix-output")

    try:
        asyncio.run(run(source_dir, output_dir))
    except JmixError as e:
        print(f"\nError: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
