"""Send a blog post to every subscriber and announce it on the event bus."""

import asyncio
from typing import Any, Dict

from relayflow import (
    Orchestrator,
    StepResponse,
    WorkflowEvent,
    case,
    define_step,
    define_workflow,
    run_workflow,
    use,
)
from relayflow.collaborators import NOTIFICATIONS
from relayflow.transports.inmemory import InMemoryTransport

SUBSCRIBERS = {
    "weekly": ["ada@example.com", "grace@example.com"],
    "vip": ["linus@example.com"],
}


class ConsoleNotifier:
    async def send(self, to: str, template: str, data: Dict[str, Any]) -> Dict[str, Any]:
        print(f"📨 {template} -> {to}")
        return {"id": f"{template}:{to}"}


async def load_post(post, ctx):
    return {"id": post["id"], "title": post["title"], "audience": post.get("audience", "weekly")}


async def send_to_all(recipients, ctx):
    notifier = ctx.service(NOTIFICATIONS)
    receipts = [await notifier.send(to, "blog-post", {}) for to in recipients]
    return StepResponse(
        output={"sent": len(receipts)},
        events=[WorkflowEvent(name="blog.broadcast", data={"recipients": len(receipts)})],
    )


async def send_vip_preview(post, ctx):
    return await ctx.service(NOTIFICATIONS).send(SUBSCRIBERS["vip"][0], "preview", post)


def build(b):
    b.step(define_step("load-post", load_post))
    b.transform("recipients", lambda out: SUBSCRIBERS[out["load-post"]["audience"]])
    b.branch(
        "audience",
        [
            case(
                lambda out: out["load-post"]["audience"] == "vip",
                use(define_step("vip-preview", send_vip_preview, requires=[NOTIFICATIONS]), "load-post"),
            )
        ],
    )
    b.step(
        define_step("send-to-all", send_to_all, max_retries=3, requires=[NOTIFICATIONS]),
        input="recipients",
    )
    return lambda out: out["send-to-all"]


blog_broadcast = define_workflow("send-blog-post", build)


async def main():
    transport = InMemoryTransport()
    orchestrator = Orchestrator(transport=transport, services={NOTIFICATIONS: ConsoleNotifier()})

    result = await run_workflow(
        blog_broadcast, {"id": 12, "title": "Durable workflows"}, orchestrator=orchestrator
    )
    print(f"✅ {result.transaction_id}: {result.state.value} {result.result}")
    for event in transport.pending("blog.broadcast"):
        print(f"📣 {event.name} from {event.step_name}: {event.data}")


if __name__ == "__main__":
    asyncio.run(main())
