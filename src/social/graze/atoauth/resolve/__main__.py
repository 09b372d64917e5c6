from typing import List
import argparse
import aiohttp
import asyncio
import logging

from social.graze.atoauth.atproto.errors import OAuthClientException
from social.graze.atoauth.resolve.handle import SubjectResolver

logger = logging.getLogger(__name__)


async def realMain() -> None:
    parser = argparse.ArgumentParser(prog="resolve", description="Resolve handles")
    parser.add_argument("subject", nargs="+", help="The subject(s) to resolve.")
    parser.add_argument(
        "--plc-hostname",
        default="plc.directory",
        help="The PLC hostname to use for resolving did-method-plc DIDs.",
    )

    args = vars(parser.parse_args())

    subjects: List[str] = args.get("subject", [])

    async with aiohttp.ClientSession() as session:
        resolver = SubjectResolver(session, args.get("plc_hostname", "plc.directory"))
        for subject in subjects:
            try:
                resolved_subject = await resolver.resolve(subject)
                print(f"resolved_subject {resolved_subject}")
            except OAuthClientException:
                logger.exception("Exception resolving subject %s", subject)


def main() -> None:
    logging.basicConfig()
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
