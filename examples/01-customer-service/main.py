"""
Customer Service Example

This example demonstrates a banking agent:
1. Load a state tree and its contexts from YAML
2. Bind a guard that reroutes unverified customers
3. Register tools with their schemas
4. Answer queries with persisted conversation memory

With AGENTO_OPENAI_API_KEY set the real model is used; otherwise a small
keyword-driven stand-in plays the model so the example runs offline.

Run: python examples/01-customer-service/main.py
"""
import asyncio
import json
import logging
from pathlib import Path

from agento import AgentPipeline, GuardAction, GuardResult, ToolSpec, get_settings
from agento.conversation import InMemoryConversationStorage
from agento.providers.llm import create_llm_provider
from agento.providers.llm.base import LLMResponse, MessageRole, ToolCall
from agento.state import EnhancedGuard
from agento.state.loaders import load_context_catalog, load_state_tree

HERE = Path(__file__).parent

ACCOUNTS = {"a-1": 1250.00, "a-2": 80.25}


# =============================================================================
# Offline stand-in model
# =============================================================================


class KeywordLLM:
    """Routes by keyword and calls the state's most specific tool once."""

    ROUTES = {"balance": "check_balance", "transfer": "transfer_funds", "send": "transfer_funds"}

    @property
    def name(self) -> str:
        return "keyword"

    async def complete(self, messages, *, tools=None, config=None):
        system = messages[0].content
        query = next(m.content for m in reversed(messages) if m.role == MessageRole.USER)

        if "intent analyzer" in system:
            query = query.rsplit("Please analyze this query:", 1)[-1]
            key = next((s for word, s in self.ROUTES.items() if word in query.lower()), "general_help")
            return LLMResponse(content=json.dumps({"selected_state_key": key, "confidence": 80}))

        if tools and messages[-1].role != MessageRole.TOOL:
            name = tools[-1]["function"]["name"]
            return LLMResponse(
                content="",
                tool_calls=[ToolCall(id="call_1", name=name, arguments='{"account_id": "a-1"}')],
                finish_reason="tool_calls",
            )

        if messages[-1].role == MessageRole.TOOL:
            return LLMResponse(content=f"Here is what I found: {messages[-1].content}")
        if "guard_notice" in system:
            return LLMResponse(content="Please verify your identity first, then I can move money for you.")
        return LLMResponse(content="Happy to help! Branches are open 9:00-17:00 on weekdays.")


# =============================================================================
# Guards and tools
# =============================================================================


def verified_only(ctx):
    if ctx.metadata.get("verified"):
        return GuardResult.allow()
    return GuardResult.deny(
        "Customer identity is not verified",
        alternative_action=GuardAction.FALLBACK_STATE,
        fallback_state_key="general_help",
        custom_message="Ask the customer to verify their identity before transferring money.",
    )


ACCOUNT_SCHEMA = {
    "type": "object",
    "properties": {"account_id": {"type": "string", "description": "Account identifier"}},
    "required": ["account_id"],
}


def get_account(args):
    return {"account_id": args["account_id"], "owner": "Ada"}


async def get_balance(args):
    return {"account_id": args["account_id"], "balance": ACCOUNTS[args["account_id"]]}


def transfer(args):
    return {"status": "scheduled", "from": args["account_id"]}


# =============================================================================
# Main
# =============================================================================


async def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s %(message)s")

    settings = get_settings()
    llm = create_llm_provider(settings) if settings.openai_api_key else KeywordLLM()

    pipeline = AgentPipeline(
        load_state_tree(HERE / "states.yaml", guards={"verified_only": EnhancedGuard(verified_only)}),
        llm=llm,
        settings=settings,
        contexts=load_context_catalog(HERE / "states.yaml"),
        storage=InMemoryConversationStorage(),
    )
    pipeline.register_tool(ToolSpec("get_account", "Look up account details", ACCOUNT_SCHEMA), get_account)
    pipeline.register_tool(ToolSpec("get_balance", "Get the balance of an account", ACCOUNT_SCHEMA), get_balance)
    pipeline.register_tool(ToolSpec("transfer", "Transfer money from an account", ACCOUNT_SCHEMA), transfer)

    print("Leaf states:", [s["key"] for s in pipeline.get_available_states()])

    turns = [
        ("What is my balance?", {}),
        ("Please transfer $50 to Bob", {}),
        ("Please transfer $50 to Bob", {"verified": True}),
        ("When are you open?", {}),
    ]
    for query, metadata in turns:
        result = await pipeline.process_query("u-1", query, session_id="demo", metadata=metadata)
        print(f"\n> {query}")
        print(f"  state={result.selected_state} routed={result.routed_state} guard={result.guard_action}")
        print(f"  tools={list(result.tools_called)}")
        print(f"  {result.response}")

    history = await pipeline.get_conversation_history("demo")
    print(f"\nStored {len(history)} messages for session 'demo'")


if __name__ == "__main__":
    asyncio.run(main())
