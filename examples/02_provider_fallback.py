# RUN: python examples/02_provider_fallback.py
"""Provider fallback: route around failing and slow providers.

Demonstrates: Router with three providers, health tracking after repeated
failures with a score and status per provider, a per-call timeout, and
AllProvidersFailedError reasons.
"""

import asyncio

from reviewline import (
    AllProvidersFailedError,
    FatalProviderError,
    HealthTracker,
    MockProvider,
    Router,
    TransientProviderError,
)


async def main() -> None:
    flaky = MockProvider("groq", response=TransientProviderError("HTTP 503"))
    slow = MockProvider("openrouter", response="late answer", delay=2.0)
    local = MockProvider("ollama", response="KEY_FINDINGS:\n- Answer from the local model\nSCORE: 6")

    health = HealthTracker(failure_threshold=2, recovery_timeout=30.0)
    router = Router([flaky, slow, local], health, default_timeout=5.0, per_call_timeout=0.5)

    for i in range(3):
        result = await router.generate("Summarize EU expansion risks")
        failed = [(a.provider_id, str(a.kind)) for a in result.failed_attempts]
        print(f"call {i + 1}: answered by {result.provider_used}, failed first: {failed}")

    print("\nHealth after three calls:")
    for row in router.status()["health"]:
        print(
            f"  {row['provider_id']}: {row['status']} (score {row['score']:.2f}, "
            f"success rate {row['success_rate']:.0%}, eligible {row['eligible']})"
        )

    # groq and openrouter are now marked unavailable, so a local failure ends the call
    local.set_response(FatalProviderError("HTTP 401 invalid key"))
    try:
        await router.generate("Summarize EU expansion risks")
    except AllProvidersFailedError as exc:
        print("\nAll providers failed:")
        for provider_id, reason in exc.reasons.items():
            print(f"  {provider_id}: {reason}")

    await router.aclose()


if __name__ == "__main__":
    asyncio.run(main())
