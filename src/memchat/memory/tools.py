"""Memory tools exposed to the model during generation."""

from __future__ import annotations

from pydantic import BaseModel, Field

from memchat.exceptions import NotFound, ToolError
from memchat.llm.tools import BoundTool, Tool
from memchat.memory.base import MemoryStore
from memchat.memory.working import WorkingMemory


class SearchMemoryInput(BaseModel):
    query: str = Field(min_length=1, description="The question to look up in memory")


class AddMemoryInput(BaseModel):
    type: str = Field(description='Where to store the memory: "semantic" for general facts, "long-term" for facts about this user')
    question: str = Field(min_length=1, description="The question this memory answers")
    answer: str = Field(min_length=1, description="The answer to remember")
    ttl: float | None = Field(default=None, description="Seconds to keep the memory; omit to keep it forever")


class UpdateMemoryInput(AddMemoryInput):
    id: str = Field(min_length=1, description="Id of the memory to update")


def _writable_store(memory: WorkingMemory, kind: str) -> MemoryStore:
    try:
        store = memory.store_for(kind)
    except ValueError as exc:
        raise ToolError(str(exc)) from exc
    if not store.writable:
        raise ToolError(f"Memory type {kind} cannot be written with this tool")
    return store


async def _search_memory(memory: WorkingMemory, args: SearchMemoryInput) -> str:
    hits = await memory.search(args.query, top_k=1)
    return hits[0].answer if hits else ""


async def _add_memory(memory: WorkingMemory, args: AddMemoryInput) -> str:
    store = _writable_store(memory, args.type)
    return await store.add(args.question, args.answer, args.ttl)


async def _update_memory(memory: WorkingMemory, args: UpdateMemoryInput) -> str:
    store = _writable_store(memory, args.type)
    try:
        return await store.update(args.id, args.question, args.answer, args.ttl)
    except NotFound as exc:
        raise ToolError(str(exc)) from exc


SEARCH_MEMORY = Tool(
    name="search_memory",
    description=(
        "Search memory for information from earlier conversations or stored facts. "
        "Use it when the answer may depend on something the user said before. "
        "Returns the best matching answer, or an empty string when nothing matches."
    ),
    input_model=SearchMemoryInput,
    handler=_search_memory,
)

ADD_MEMORY = Tool(
    name="add_memory",
    description=(
        "Store a question and its answer for later. Use type \"semantic\" for facts "
        "true for anyone and \"long-term\" for facts about this user. Returns the memory id."
    ),
    input_model=AddMemoryInput,
    handler=_add_memory,
)

UPDATE_MEMORY = Tool(
    name="update_memory",
    description="Replace the question and answer of an existing memory by id. Returns the memory id.",
    input_model=UpdateMemoryInput,
    handler=_update_memory,
)

MEMORY_TOOLS = (SEARCH_MEMORY, ADD_MEMORY, UPDATE_MEMORY)


def memory_tools(memory: WorkingMemory) -> list[BoundTool]:
    return [tool.bind(memory) for tool in MEMORY_TOOLS]
