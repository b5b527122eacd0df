from typing import List
import argparse
import aiohttp
import asyncio
import logging

from social.graze.xrpc.app.cli import configure_logging, configure_sentry
from social.graze.xrpc.app.config import Settings
from social.graze.xrpc.client import XrpcClient
from social.graze.xrpc.errors import InvalidIdentifierError
from social.graze.xrpc.resolve.did import resolve_subject

logger = logging.getLogger(__name__)


async def realMain() -> None:
    parser = argparse.ArgumentParser(prog="resolve", description="Resolve handles")
    parser.add_argument("subject", nargs="+", help="The subject(s) to resolve.")
    parser.add_argument(
        "--plc-hostname",
        default=None,
        help="The PLC hostname to use for resolving did-method-plc DIDs.",
    )

    args = vars(parser.parse_args())

    settings = Settings()
    plc_hostname = args.get("plc_hostname") or settings.plc_hostname
    subjects: List[str] = args.get("subject", [])

    async with aiohttp.ClientSession() as session:
        client = XrpcClient(session, settings=settings)
        for subject in subjects:
            try:
                result = await resolve_subject(client, plc_hostname, subject)
            except InvalidIdentifierError as e:
                logger.error("Cannot resolve %s: %s", subject, e)
                continue

            if result.succeeded:
                print(f"resolved_subject {result.value}")
            else:
                print(f"unresolved {subject} {result.status_code} {result.error}")


def main() -> None:
    settings = Settings()
    configure_logging(logging.DEBUG if settings.debug else logging.INFO)
    configure_sentry(settings)
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
