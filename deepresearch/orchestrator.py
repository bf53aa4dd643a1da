"""Budget-bounded research control loop.

    PlanNode -> RoundNode -> EvaluateNode -> PolicyNode
                    ^                           |
                    +------ continue -----------+
                    +-- ReplanNode <- replan ---+
    finalize_full | finalize_partial | depth_limit -> ReportNode
    RoundNode --budget_exhausted--> ReportNode

Every node works on one ``ResearchSession``; artifacts are appended to the
run's ``ArtifactStore`` as soon as they exist, so a failed run still leaves
its plan, facts and evaluations on disk.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .artifact_store import ArtifactStore
from .config import ResearchSettings
from .evaluator import EvaluatorAgent
from .llm import LLMClient
from .memory import Compaction, RelevanceRanker
from .planner import Planner
from .policy_engine import PolicyEngine
from .reporter import ReporterAgent
from .research_agent import ResearchSubAgent
from .schemas import (
    Evaluation,
    Fact,
    Plan,
    PolicyAction,
    ResearchResult,
    RunManifest,
    RunResult,
    SourceUsage,
)
from .search import ConversationSearchClient
from .summarizer import SummarizerAgent
from .token_tracker import TokenTracker
from .workflow import PROCESSED_ACTION, Flow, Node, ParallelBatchFlow


BUDGET_EXHAUSTED = "budget_exhausted"
DEPTH_LIMIT = "depth_limit"

OUTCOME_STATUS = {
    PolicyAction.FINALIZE_FULL.value: "complete",
    DEPTH_LIMIT: "complete",
    PolicyAction.FINALIZE_PARTIAL.value: "partial",
    BUDGET_EXHAUSTED: "partial",
}


def generate_run_id(question: str, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%d_%H%M%S")
    digest = hashlib.sha256(question.encode("utf-8")).hexdigest()[:8]
    return f"{stamp}_{digest}"


@dataclass
class ResearchSession:
    question: str
    run_id: str
    tracker: TokenTracker
    plan: Optional[Plan] = None
    facts: List[Fact] = field(default_factory=list)
    titles: Dict[str, str] = field(default_factory=dict)
    current_depth: int = 0
    rounds_completed: int = 0
    replans_used: int = 0
    evaluation: Optional[Evaluation] = None
    last_action: Optional[str] = None
    outcome: Optional[str] = None
    report: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> str:
        return OUTCOME_STATUS.get(self.outcome or "", "partial")

    def facts_for(self, url: str) -> int:
        return sum(1 for fact in self.facts if url in fact.source_urls)


@dataclass
class LoopContext:
    """Collaborators and knobs shared by every node of one run."""

    settings: ResearchSettings
    store: ArtifactStore
    planner: Planner
    research_agent: ResearchSubAgent
    evaluator: EvaluatorAgent
    policy: PolicyEngine
    reporter: ReporterAgent
    ranker: RelevanceRanker
    compactor: Compaction
    logger: logging.Logger

    def persist(self, artifact_type: str, data: Dict[str, Any]) -> None:
        self.store.put(artifact_type, data)


class LoopNode(Node):
    def __init__(self, ctx: LoopContext, max_retries: int = 1, wait: float = 0.0):
        super().__init__(max_retries=max_retries, wait=wait)
        self.ctx = ctx


class PlanNode(LoopNode):
    def prepare(self, session: ResearchSession) -> str:
        return session.question

    def execute(self, question: str) -> Plan:
        return self.ctx.planner.generate_plan(question, model=self.ctx.settings.models.reasoning)

    def finalize(self, session: ResearchSession, prep_res: str, plan: Plan) -> Optional[str]:
        session.plan = plan
        for aspect in plan.aspects:
            self.ctx.persist(
                "plan_node",
                {
                    "question": plan.question,
                    "depth_limit": plan.depth_limit,
                    "breadth_limit": plan.breadth_limit,
                    "aspect": aspect.model_dump(),
                },
            )
        if self.ctx.settings.max_depth <= 0:
            session.outcome = DEPTH_LIMIT
            return DEPTH_LIMIT
        return None


class RoundNode(LoopNode):
    """One pass over every aspect and query of the plan.

    Queries run from ``finalize``: each query's artifacts are persisted
    before the next query starts.
    """

    def prepare(self, session: ResearchSession) -> Plan:
        self.ctx.logger.info("--- Depth %s ---", session.current_depth + 1)
        return session.plan

    def execute(self, plan: Plan) -> List[Tuple[str, str, str]]:
        return [(aspect.id, aspect.title, query) for aspect in plan.aspects for query in aspect.queries]

    def finalize(self, session: ResearchSession, prep_res: Plan, work: List[Tuple[str, str, str]]) -> Optional[str]:
        settings = self.ctx.settings
        current_aspect = None
        for aspect_id, title, query in work:
            if aspect_id != current_aspect:
                self.ctx.logger.info("Researching aspect: %s", title)
                current_aspect = aspect_id
            result = self.ctx.research_agent.research(
                query,
                aspect_id=aspect_id,
                limit=settings.max_summaries_per_branch,
                model=settings.models.summary,
            )
            self.record(session, aspect_id, query, result)
        session.rounds_completed += 1

        if session.tracker.is_exhausted():
            self.ctx.logger.warning("Budget exhausted after round %s", session.rounds_completed)
            session.outcome = BUDGET_EXHAUSTED
            return BUDGET_EXHAUSTED
        return None

    def record(self, session: ResearchSession, aspect_id: str, query: str, result: ResearchResult) -> None:
        session.tracker.record_text(
            "research", query, *[str(hit.get("summary") or "") for hit in result.raw_results]
        )
        for hit in result.raw_results:
            if hit.get("title"):
                session.titles.setdefault(hit["url"], str(hit["title"]))
        if self.ctx.settings.persist_intermediate:
            self.ctx.persist("query", {"aspect_id": aspect_id, "query": query, "depth": session.current_depth})
            for hit in result.raw_results:
                self.ctx.persist("result_raw", {"aspect_id": aspect_id, "query": query, "result": hit})
            for summary in result.summaries:
                self.ctx.persist("summary", summary.model_dump())
        for fact in result.facts:
            self.ctx.persist("fact", fact.model_dump())
        session.facts.extend(result.facts)


class EvaluateNode(LoopNode):
    def prepare(self, session: ResearchSession) -> Tuple[str, Plan, List[Fact], List[str]]:
        return session.question, session.plan, list(session.facts), self.ctx.store.unique_sources()

    def execute(self, prep_res: Tuple[str, Plan, List[Fact], List[str]]) -> Evaluation:
        question, plan, facts, sources = prep_res
        return self.ctx.evaluator.evaluate(question, plan, facts, sources, model=self.ctx.settings.models.fast)

    def exec_fallback(self, prep_res: Any, exc: Exception) -> Evaluation:
        self.ctx.logger.error("Evaluation failed, using midpoint evaluation: %s", exc)
        return Evaluation.midpoint()

    def finalize(self, session: ResearchSession, prep_res: Any, evaluation: Evaluation) -> Optional[str]:
        session.evaluation = evaluation
        self.ctx.persist("evaluation", {**evaluation.model_dump(), "depth": session.current_depth})
        return None


class PolicyNode(LoopNode):
    def prepare(self, session: ResearchSession) -> Dict[str, Any]:
        evaluation = session.evaluation or Evaluation.midpoint()
        return {
            "coverage_score": evaluation.coverage_score,
            "confidence_score": evaluation.confidence_score,
            "token_usage": session.tracker.total,
            "token_budget": session.tracker.budget,
            "replans_used": session.replans_used,
            "aspect_gap_count": len(evaluation.missing_aspects),
        }

    def execute(self, state: Dict[str, Any]) -> PolicyAction:
        return self.ctx.policy.decide(**state)

    def finalize(self, session: ResearchSession, prep_res: Any, action: PolicyAction) -> Any:
        self.ctx.logger.info("Policy decision: %s", action.value)
        session.last_action = action.value
        if action.is_terminal:
            session.outcome = action.value
            return action
        if action is PolicyAction.REPLAN:
            return action
        session.current_depth += 1
        if session.current_depth >= self.ctx.settings.max_depth:
            self.ctx.logger.info("Reached max depth %s", self.ctx.settings.max_depth)
            session.outcome = DEPTH_LIMIT
            return DEPTH_LIMIT
        return action


class ReplanNode(LoopNode):
    def finalize(self, session: ResearchSession, prep_res: Any, exec_res: Any) -> Optional[str]:
        missing = session.evaluation.missing_aspects if session.evaluation else []
        self.ctx.logger.info("Replanning to address gaps: %s", ", ".join(missing))
        session.replans_used += 1
        # TODO: generate a delta plan for the missing aspects instead of reusing the current one.
        self.ctx.logger.warning("Replanning keeps the existing plan; continuing with it")
        return None


class ReportNode(LoopNode):
    def prepare(self, session: ResearchSession) -> Dict[str, Any]:
        settings = self.ctx.settings
        ranked = self.ctx.ranker.rank(session.facts, session.question, top_k=settings.relevance_top_k)
        if self.ctx.compactor.needs_compaction(ranked):
            ranked = self.ctx.compactor.compact(ranked)
        evaluation = session.evaluation
        return {
            "question": session.question,
            "plan": session.plan,
            "facts": ranked,
            "sources": self.ctx.store.unique_sources(),
            "gaps": list(evaluation.missing_aspects) if evaluation else [],
            "titles": dict(session.titles),
            "methodology": {
                "depth_reached": session.rounds_completed,
                "breadth": len(session.plan.aspects) if session.plan else 0,
                "token_usage": dict(session.tracker.usage),
                "budget_status": session.tracker.budget_status(),
            },
        }

    def execute(self, prep_res: Dict[str, Any]) -> str:
        return self.ctx.reporter.generate_report(
            prep_res["question"],
            prep_res["plan"],
            prep_res["facts"],
            prep_res["sources"],
            gaps=prep_res["gaps"],
            methodology=prep_res["methodology"],
            titles=prep_res["titles"],
            model=self.ctx.settings.models.reasoning,
        )

    def finalize(self, session: ResearchSession, prep_res: Any, report: str) -> Optional[str]:
        session.report = report
        return None


def build_research_flow(ctx: LoopContext) -> Flow:
    attempts = ctx.settings.retry_attempts
    wait = ctx.settings.retry_wait_s
    plan = PlanNode(ctx)
    research_round = RoundNode(ctx)
    evaluate = EvaluateNode(ctx, max_retries=attempts, wait=wait)
    policy = PolicyNode(ctx)
    replan = ReplanNode(ctx)
    report = ReportNode(ctx)

    plan >> research_round >> evaluate >> policy
    plan - DEPTH_LIMIT >> report
    research_round - BUDGET_EXHAUSTED >> report
    policy - PolicyAction.CONTINUE >> research_round
    policy - PolicyAction.REPLAN >> replan
    replan >> research_round
    policy - PolicyAction.FINALIZE_FULL >> report
    policy - PolicyAction.FINALIZE_PARTIAL >> report
    policy - DEPTH_LIMIT >> report
    return Flow(start=plan)


class Orchestrator:
    """Runs one research question end to end and never raises.

    ``generate`` / ``search`` / ``fetch`` default to the HTTP clients built
    from ``settings``; pass plain callables to swap them out.
    """

    def __init__(
        self,
        question: str,
        settings: Optional[ResearchSettings] = None,
        generate: Optional[Callable[[str, Optional[str]], str]] = None,
        search: Optional[Callable[[str, int], List[Dict[str, Any]]]] = None,
        fetch: Optional[Callable[[str], Optional[Dict[str, Any]]]] = None,
        run_id: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.question = question
        self.settings = settings or ResearchSettings()
        self.logger = logger or logging.getLogger("deepresearch.orchestrator")
        self.run_id = run_id or generate_run_id(question)
        self._owned: List[Any] = []

        if generate is None:
            client = LLMClient(
                base_url=self.settings.llm.base_url,
                api_key=self.settings.llm.api_key,
                timeout_s=self.settings.llm.timeout_s,
                temperature=self.settings.llm.temperature,
                max_tokens=self.settings.llm.max_tokens,
            )
            self._owned.append(client)
            generate = client.generate
        if search is None:
            search_client = ConversationSearchClient(
                base_url=self.settings.search.base_url,
                collection=self.settings.search.collection,
                mode=self.settings.search.mode,
                timeout_s=self.settings.search.timeout_s,
            )
            self._owned.append(search_client)
            search = search_client.search
            if fetch is None and self.settings.search.fetch_full_records:
                fetch = search_client.fetch

        self.tracker = TokenTracker(self.settings.token_budget)
        self.store = ArtifactStore(self.run_id, base_path=self.settings.cache_path)
        summarizer = SummarizerAgent(generate, tracker=self.tracker, logger=self.logger)
        self.ctx = LoopContext(
            settings=self.settings,
            store=self.store,
            planner=Planner(
                generate,
                max_aspects=self.settings.max_aspects,
                breadth_limit=self.settings.breadth_limit,
                tracker=self.tracker,
                logger=self.logger,
            ),
            research_agent=ResearchSubAgent(
                search,
                summarizer,
                fetch=fetch,
                retry_attempts=self.settings.retry_attempts,
                retry_wait_s=self.settings.retry_wait_s,
                max_workers=self.settings.max_parallel_summaries,
                logger=self.logger,
            ),
            evaluator=EvaluatorAgent(generate, tracker=self.tracker, logger=self.logger),
            policy=PolicyEngine(
                min_coverage=self.settings.min_coverage,
                stop_if_confidence=self.settings.stop_if_confidence,
                replan_max=self.settings.replan_max,
                logger=self.logger,
            ),
            reporter=ReporterAgent(generate, tracker=self.tracker, logger=self.logger),
            ranker=RelevanceRanker(logger=self.logger),
            compactor=Compaction(logger=self.logger),
            logger=self.logger,
        )
        self.flow = build_research_flow(self.ctx)
        self.session = ResearchSession(question=question, run_id=self.run_id, tracker=self.tracker)

    def build_manifest(self, session: ResearchSession, status: Optional[str] = None) -> RunManifest:
        aspects = session.plan.aspects if session.plan else []
        completed = sum(1 for aspect in aspects if any(fact.aspect_id == aspect.id for fact in session.facts))
        return RunManifest(
            question=session.question,
            run_id=session.run_id,
            status=status or session.status,
            token_usage=dict(session.tracker.usage),
            depth_reached=session.rounds_completed,
            aspects_completed=completed,
            confidence_final=session.evaluation.confidence_score if session.evaluation else 0.0,
            sources=[
                SourceUsage(url=url, facts_used=session.facts_for(url)) for url in self.store.unique_sources()
            ],
        )

    def execute(self) -> RunResult:
        session = self.session
        self.logger.info("=== DEEP RESEARCH RUN %s ===", self.run_id)
        self.logger.info("Question: %s", self.question)
        try:
            self.flow.run(session)
            report_path = self.store.save_report(session.report or "")
            self.logger.info("Report saved to: %s", report_path)
            manifest_path = self.store.save_manifest(self.build_manifest(session))
            self.logger.info("Manifest saved to: %s", manifest_path)
            return RunResult(
                success=True,
                run_id=self.run_id,
                report=session.report,
                report_path=str(report_path),
                outcome=session.outcome,
                stats=self.store.stats(),
                budget=self.tracker.summary(),
            )
        except Exception as exc:
            self.logger.error("Orchestration error: %s", exc)
            self.logger.debug("Orchestration traceback", exc_info=True)
            self._save_failed_manifest(session)
            return RunResult(success=False, run_id=self.run_id, error=str(exc), budget=self.tracker.summary())
        finally:
            self.close()

    def _save_failed_manifest(self, session: ResearchSession) -> None:
        try:
            self.store.save_manifest(self.build_manifest(session, status="failed"))
        except OSError as exc:
            self.logger.error("Failed to write manifest for failed run: %s", exc)

    def close(self) -> None:
        for client in self._owned:
            client.close()
        self._owned = []


class ResearchQuestionNode(Node):
    """Runs one full control loop for the ``question`` param of its branch."""

    def __init__(self, orchestrator_factory: Callable[[str], Orchestrator]):
        super().__init__()
        self.orchestrator_factory = orchestrator_factory

    def prepare(self, shared: Dict[str, Any]) -> Tuple[str, str]:
        return str(self.params["question_id"]), str(self.params["question"])

    def execute(self, prep_res: Tuple[str, str]) -> RunResult:
        _, question = prep_res
        return self.orchestrator_factory(question).execute()

    def finalize(self, shared: Dict[str, Any], prep_res: Tuple[str, str], result: RunResult) -> str:
        question_id, _ = prep_res
        shared["results"] = {question_id: result.model_dump()}
        return PROCESSED_ACTION


class CollectRunsNode(Node):
    def prepare(self, shared: Dict[str, Any]) -> Mapping[str, Any]:
        return shared.get("results") or {}

    def execute(self, results: Mapping[str, Any]) -> Dict[str, int]:
        succeeded = sum(1 for item in results.values() if item.get("success"))
        return {"total": len(results), "succeeded": succeeded, "failed": len(results) - succeeded}

    def finalize(self, shared: Dict[str, Any], prep_res: Any, counts: Dict[str, int]) -> None:
        shared["summary"] = counts
        return None


class QuestionBatchFlow(ParallelBatchFlow):
    def prepare(self, shared: Dict[str, Any]) -> List[Dict[str, str]]:
        batches = []
        for idx, item in enumerate(shared.get("questions_input") or [], start=1):
            if isinstance(item, Mapping):
                question_id = str(item.get("id") or f"q{idx}")
                question = str(item.get("question") or "")
            else:
                question_id, question = f"q{idx}", str(item)
            if question.strip():
                batches.append({"question_id": question_id, "question": question})
        return batches


class ParallelResearch:
    """Independent control loops for several questions, one thread each."""

    def __init__(
        self,
        settings: Optional[ResearchSettings] = None,
        orchestrator_factory: Optional[Callable[[str], Orchestrator]] = None,
        max_workers: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.settings = settings or ResearchSettings()
        self.logger = logger or logging.getLogger("deepresearch.orchestrator")
        self.orchestrator_factory = orchestrator_factory or self._default_factory
        start = ResearchQuestionNode(self.orchestrator_factory)
        start - PROCESSED_ACTION >> CollectRunsNode()
        self.flow = QuestionBatchFlow(start=start, max_workers=max_workers)

    def _default_factory(self, question: str) -> Orchestrator:
        return Orchestrator(question, settings=self.settings, logger=self.logger)

    def run(self, questions: Sequence[Any]) -> Dict[str, Any]:
        shared: Dict[str, Any] = {"questions_input": list(questions), "results": {}}
        self.logger.info("Running %s research questions in parallel", len(shared["questions_input"]))
        self.flow.run(shared)
        return {"results": shared["results"], "summary": shared.get("summary", {})}
