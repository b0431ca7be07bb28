import asyncio

from fm_intelligence.chat.service import ChatService
from fm_intelligence.core.errors import IntelligenceError
from fm_intelligence.core.lifecycle import observe


async def main():
    try:
        service = ChatService()
    except IntelligenceError as exc:
        print(f"Foundation Models not available: {exc}")
        return

    # Start warming the session before the question arrives
    service.prewarm()

    async for observation in observe(service, "What is 2+2?"):
        if observation.final:
            print(f"Settled: {observation.outcome}")
        print(f"Model response: {observation.output}")


if __name__ == "__main__":
    asyncio.run(main())
