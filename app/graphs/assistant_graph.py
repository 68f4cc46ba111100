"""Assistant LangGraph: plan (Stage A) -> executor (Stage B)."""

from dataclasses import dataclass, field
from typing import Any

from langgraph.graph import END, StateGraph

from app.chains.execute_plan import OnUsage, execute
from app.chains.plan_request import plan_with_quota_check
from app.core.config import Settings, get_settings
from app.core.llm_client import LLMClient, get_shared_client
from app.core.logging import get_logger
from app.core.planner_heuristics import with_sources_section
from app.core.quota import QuotaEnforcer
from app.core.retrieval import BM25QueryFn, EmbeddingFn, VectorQueryFn
from app.core.schemas_assistant import AssistantRequest, AssistantResponse, PlannerOutput
from app.core.web_search import WebSearchFn

logger = get_logger(__name__)

MAX_STEPS = 4


@dataclass
class AssistantDeps:
    """Collaborators shared by both stages. Unset fields use defaults."""

    client: LLMClient | None = None
    settings: Settings | None = None
    quota: QuotaEnforcer | None = None
    web_search: WebSearchFn | None = None
    bm25_query: BM25QueryFn | None = None
    vector_query: VectorQueryFn | None = None
    embed: EmbeddingFn | None = None
    on_usage: OnUsage | None = None


@dataclass
class AssistantRunState:
    """State for the assistant graph."""

    # Input fields
    request: AssistantRequest

    # Processing state
    step_count: int = 0
    plan: PlannerOutput | None = None
    response: AssistantResponse | None = None
    notes: list[str] = field(default_factory=list)


def _check_max_steps(state: AssistantRunState) -> AssistantRunState:
    """Check and increment step count, raise if exceeded."""
    state.step_count += 1
    if state.step_count > MAX_STEPS:
        raise RuntimeError(f"Exceeded max steps ({MAX_STEPS})")
    return state


def apply_task_rules(
    plan: PlannerOutput, request: AssistantRequest
) -> tuple[PlannerOutput, list[str]]:
    """
    Per-assistant rules applied to every plan before execution.

    Market analysis always searches the web. Returns the (possibly copied)
    plan and the names of the rules that changed it.
    """
    if request.assistant != "market_analysis" or plan.requires_web_search:
        return plan, []

    logger.info(
        "Forcing web search for market_analysis",
        extra={"tenant_id": request.tenant_id},
    )
    plan = plan.model_copy(
        update={
            "requires_web_search": True,
            "sections": with_sources_section(plan.sections, True),
        }
    )
    return plan, ["web_search_forced"]


def _build_graph(deps: AssistantDeps) -> StateGraph:
    """Build the assistant graph with collaborators bound into the nodes."""
    settings = deps.settings or get_settings()
    quota = deps.quota or QuotaEnforcer(settings)
    client = deps.client or get_shared_client(settings)

    async def plan_node(state: AssistantRunState) -> dict[str, Any]:
        state = _check_max_steps(state)
        plan = await plan_with_quota_check(
            state.request, client=client, quota=quota, settings=settings
        )
        return {"plan": plan, "step_count": state.step_count}

    def enforce_task_rules(state: AssistantRunState) -> dict[str, Any]:
        state = _check_max_steps(state)
        plan, notes = apply_task_rules(state.plan, state.request)
        if not notes:
            return {"step_count": state.step_count}
        return {
            "plan": plan,
            "notes": [*state.notes, *notes],
            "step_count": state.step_count,
        }

    async def execute_node(state: AssistantRunState) -> dict[str, Any]:
        state = _check_max_steps(state)
        response = await execute(
            state.plan,
            state.request,
            state.request.tenant_id,
            state.request.user_id,
            client=client,
            settings=settings,
            quota=quota,
            web_search=deps.web_search,
            bm25_query=deps.bm25_query,
            vector_query=deps.vector_query,
            embed=deps.embed,
            on_usage=deps.on_usage,
        )
        return {"response": response, "step_count": state.step_count}

    graph = StateGraph(AssistantRunState)

    graph.add_node("plan", plan_node)
    graph.add_node("enforce_task_rules", enforce_task_rules)
    graph.add_node("execute", execute_node)

    graph.set_entry_point("plan")
    graph.add_edge("plan", "enforce_task_rules")
    graph.add_edge("enforce_task_rules", "execute")
    graph.add_edge("execute", END)

    return graph


def _get(final_state: Any, key: str) -> Any:
    if isinstance(final_state, dict):
        return final_state.get(key)
    return getattr(final_state, key, None)


async def run_assistant(
    request: AssistantRequest,
    deps: AssistantDeps | None = None,
) -> tuple[PlannerOutput, AssistantResponse]:
    """
    Run planner then executor for one request.

    Args:
        request: Validated assistant request
        deps: LLM client, quota enforcer, search and retrieval collaborators

    Returns:
        Tuple of (plan, response)

    Raises:
        QuotaError: Planner or executor preflight denied the request
    """
    deps = deps or AssistantDeps()
    logger.info(
        f"Starting assistant graph for {request.assistant}",
        extra={"tenant_id": request.tenant_id, "user_id": request.user_id},
    )

    compiled = _build_graph(deps).compile()
    final_state = await compiled.ainvoke(AssistantRunState(request=request))

    plan = _get(final_state, "plan")
    response = _get(final_state, "response")
    if plan is None or response is None:
        raise ValueError("Assistant graph completed without a response")

    logger.info(
        f"Completed assistant graph: {len(response.sections)} sections, {len(response.sources)} sources",
        extra={"tenant_id": request.tenant_id, "user_id": request.user_id},
    )
    return plan, response
