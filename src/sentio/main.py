"""Process bootstrap.

``create_engine`` wires the configured components together and closes them
on exit. The ``sentio`` console script runs one inbound message, read from
a JSON file, through the workflow and prints the result.
"""

import argparse
import asyncio
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError

from sentio.core.base import ApplicationError
from sentio.core.config import Settings, load_settings
from sentio.core.logging import get_logger, setup_logging
from sentio.domain.models import InboundMessage, WorkflowResult
from sentio.domain.services import GenerationService, MessageSender
from sentio.infrastructure.generation import ChatCompletionsClient
from sentio.infrastructure.mail import SmtpSender
from sentio.infrastructure.repositories import MemoryStore, create_memory_store
from sentio.services.prompts import PromptCatalog
from sentio.services.workflow import WorkflowOrchestrator

logger = get_logger(__name__)


@dataclass
class Engine:
    settings: Settings
    store: MemoryStore
    catalog: PromptCatalog
    generator: GenerationService
    sender: MessageSender
    orchestrator: WorkflowOrchestrator


@asynccontextmanager
async def create_engine(settings: Settings) -> AsyncIterator[Engine]:
    """Build every component from ``settings``.

    Raises:
        PromptCatalogError: If the prompt definitions are missing or incomplete
        StoreUnavailableError: If the configured store cannot be reached
        AuthenticationError: If no generation API key is configured
    """
    logger.info("Starting Sentio engine", store=settings.store.backend, model=settings.generation.model)
    catalog = PromptCatalog.load(settings.prompts_path, required=[settings.workflow.prompt_category])
    store = await create_memory_store(settings.store)
    try:
        generator = ChatCompletionsClient(settings.generation)
    except ApplicationError:
        await store.close()
        raise
    sender = SmtpSender(settings.mail)

    try:
        yield Engine(
            settings=settings,
            store=store,
            catalog=catalog,
            generator=generator,
            sender=sender,
            orchestrator=WorkflowOrchestrator(store, catalog, generator, sender, settings),
        )
    finally:
        await generator.aclose()
        await store.close()
        logger.info("Sentio engine stopped")


def load_message(path: Path) -> InboundMessage:
    """Raises: OSError, ValidationError"""
    return InboundMessage.model_validate_json(path.read_text(encoding="utf-8"))


async def process_message(settings: Settings, message: InboundMessage) -> WorkflowResult:
    async with create_engine(settings) as engine:
        return await engine.orchestrator.process(message)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run one inbound message through the Sentio workflow")
    parser.add_argument("message", type=Path, help="JSON file with sender_address, subject, body_text, received_at")
    parser.add_argument("--prompts", type=Path, help="Prompt definitions file")
    parser.add_argument("--log-level", help="Override the configured log level")
    args = parser.parse_args(argv)

    overrides: dict = {}
    if args.prompts:
        overrides["prompts_path"] = args.prompts
    try:
        settings = load_settings(**overrides)
    except ApplicationError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return 2
    if args.log_level:
        settings.logging.level = args.log_level
    setup_logging(settings.logging)

    try:
        message = load_message(args.message)
    except (OSError, ValidationError) as e:
        logger.error("Cannot read inbound message", path=str(args.message), error=str(e))
        return 2

    try:
        result = asyncio.run(process_message(settings, message))
    except ApplicationError as e:
        logger.error("Engine could not start", error=e.message, error_code=e.code.value)
        return 2

    print(result.model_dump_json(indent=2))
    return 0 if result.succeeded or result.ignored else 1


if __name__ == "__main__":
    sys.exit(main())
