import argparse
import asyncio
import base64
import json
import logging

from cryptography.fernet import Fernet
from jwcrypto import jwk
from ulid import ULID

logger = logging.getLogger(__name__)


async def genJwk(count: int) -> None:
    for index in range(1, count + 1):
        key = jwk.JWK.generate(kty="EC", crv="P-256", kid=str(ULID()), alg="ES256")
        private_key = json.dumps(key.export(private_key=True, as_dict=True))
        print(f"PRIVATE_KEY_{index}={private_key}")


async def genCryptoKey() -> None:
    key = Fernet.generate_key()
    print(base64.b64encode(key).decode("utf-8"))


async def realMain() -> None:
    parser = argparse.ArgumentParser(
        prog="atoauth-util", description="atoauth utilities"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    gen_jwk = subparsers.add_parser(
        "gen-jwk", help="Generate signing keys as PRIVATE_KEY_n settings"
    )
    gen_jwk.add_argument(
        "--count", type=int, default=3, help="The number of keys to generate."
    )
    _ = subparsers.add_parser(
        "gen-crypto", help="Generate an ENCRYPTION_KEY for stored records"
    )

    args = vars(parser.parse_args())
    command = args.get("command", None)

    if command == "gen-jwk":
        await genJwk(max(1, min(args.get("count", 3), 3)))
    elif command == "gen-crypto":
        await genCryptoKey()


def main() -> None:
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
