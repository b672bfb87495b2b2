# RUN: python examples/01_review_pipeline.py
"""Review pipeline: generate, reject, edit, comment and approve every stage.

Demonstrates: create_engine() with a MockProvider, the sequential review
gate, regeneration after rejection, line edits and comments, and a
Markdown report at the end.
"""

import asyncio

from reviewline import (
    DEFAULT_STAGES,
    InMemoryAuditSink,
    AuditLogger,
    LoggingPipelineCallbackHandler,
    MockProvider,
    OutOfOrderError,
    ReviewlineConfig,
    create_engine,
    to_markdown,
)


def _analysis(stage: str, finding: str, score: int) -> str:
    return (
        f"KEY_FINDINGS:\n- {finding}\n- {stage} looks manageable with focus\n\n"
        f"RISKS:\n- Execution risk in the first year\n\n"
        f"RECOMMENDATIONS:\n- Run a small pilot before committing budget\n\n"
        f"SCORE: {score}"
    )


async def main() -> None:
    provider = MockProvider("mock")
    provider.queue(
        _analysis("Ideation", "Partnering beats building a local team", 6),
        _analysis("Ideation", "A marketplace launch in Germany is the fastest route", 8),
        _analysis("Business Model", "Subscription pricing fits EU buyers", 7),
        _analysis("Market Risk", "Two incumbents dominate France", 5),
    )

    sink = InMemoryAuditSink()
    engine = create_engine(
        ReviewlineConfig(),
        providers=[provider],
        stages=DEFAULT_STAGES[:3],
        audit=AuditLogger([sink]),
        callbacks=[LoggingPipelineCallbackHandler()],
    )

    view = await engine.start("Should we expand to the EU?", {"budget": "2M EUR", "timeline": "12 months"})
    pid = view.id
    print(f"Started {pid} with {view.total_steps} steps\n")

    view = await engine.execute_next_step(pid)
    print("Ideation, first draft:")
    print("\n".join(f"  {line}" for line in view.steps[0].artifact.lines))

    # The next stage is gated until ideation is approved
    try:
        await engine.execute_next_step(pid)
    except OutOfOrderError as exc:
        print(f"\nBlocked as expected: {exc}")

    view = await engine.reject_step(pid, "ideation", feedback="Focus on a single country first")
    print(f"\nRejected; ideation is {view.steps[0].status} again")

    view = await engine.execute_next_step(pid)
    print(f"Regenerated ideation, score {view.steps[0].result.score}/10 (attempt {view.steps[0].attempts})")

    await engine.edit_artifact(pid, "ideation", 1, "- A marketplace launch in Germany, then Austria")
    comment, _ = await engine.add_comment(pid, "ideation", 1, "What about Switzerland?", author="cfo")
    await engine.approve_step(pid, "ideation", notes="Good direction")

    for stage in DEFAULT_STAGES[1:3]:
        await engine.execute_next_step(pid)
        view = await engine.approve_step(pid, stage.id)

    print(f"\nPipeline status: {view.status}, aggregate score {view.aggregate_score}")
    print(f"Open comments on ideation: {[c.text for c in view.steps[0].artifact.open_comments]}")
    print(f"Audit trail: {sink.event_types()}\n")

    print(to_markdown(view))
    await engine.aclose()


if __name__ == "__main__":
    asyncio.run(main())
