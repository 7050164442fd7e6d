from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from archsentinel.store import AgentSummary, DailyCount, Pattern, TimeWindow, ViolationStore

LEARNING_WINDOW_DAYS = 7
DASHBOARD_WINDOW_DAYS = 30


@dataclass(frozen=True, slots=True)
class LearningScore:
    agent_name: str
    period: TimeWindow
    score: float
    violations_this_period: int
    violations_prior_period: int

    @property
    def improvement(self) -> float:
        """Relative drop in violations vs. the prior window, in percent."""

        prior = self.violations_prior_period
        return 100.0 * (prior - self.violations_this_period) / max(prior, 1)


@dataclass(frozen=True, slots=True)
class RuleCount:
    rule_id: str
    count: int


@dataclass(frozen=True, slots=True)
class FeedbackTemplate:
    what_went_wrong: str
    why_it_matters: tuple[str, ...]
    correct_pattern: str
    prevention_tip: str
    prompt_rule: str | None = None


@dataclass(frozen=True, slots=True)
class FeedbackItem:
    rule_id: str
    count: int
    template: FeedbackTemplate


@dataclass(frozen=True, slots=True)
class FeedbackDocument:
    agent_name: str
    generated_at: datetime
    period: TimeWindow
    score: LearningScore
    items: tuple[FeedbackItem, ...]
    prompt_recommendations: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class Dashboard:
    generated_at: datetime
    window: TimeWindow
    total_violations: int
    auto_fixed: int
    active_agents: int
    agents: tuple[AgentSummary, ...]
    scores: tuple[LearningScore, ...]
    patterns: tuple[Pattern, ...]
    trend: tuple[DailyCount, ...]

    @property
    def fix_rate(self) -> float:
        return self.auto_fixed / self.total_violations if self.total_violations else 0.0


def compute_score(prior: int, current: int) -> float:
    raw = 50.0 + 50.0 * (prior - current) / max(prior, 1)
    return max(0.0, min(100.0, raw))


def learning_score(store: ViolationStore, agent_name: str, now: datetime) -> LearningScore:
    """Compare the trailing 7 days with the 7 days before them."""

    current_window = TimeWindow.trailing(now, days=LEARNING_WINDOW_DAYS)
    prior_window = TimeWindow.trailing(now, days=LEARNING_WINDOW_DAYS, offset_days=LEARNING_WINDOW_DAYS)
    current = store.count_by_agent(agent_name, current_window)
    prior = store.count_by_agent(agent_name, prior_window)
    return LearningScore(
        agent_name=agent_name,
        period=current_window,
        score=compute_score(prior, current),
        violations_this_period=current,
        violations_prior_period=prior,
    )


def top_rules(
    store: ViolationStore,
    agent_name: str | None,
    n: int = 5,
    window: TimeWindow | None = None,
) -> list[RuleCount]:
    patterns = store.aggregate_patterns(window, agent_name=agent_name)
    ranked = sorted(patterns, key=lambda p: (-p.occurrence_count, p.rule_id))
    return [RuleCount(rule_id=p.rule_id, count=p.occurrence_count) for p in ranked[: max(0, n)]]


FEEDBACK_TEMPLATES: dict[str, FeedbackTemplate] = {
    "MISSING_INTERFACE": FeedbackTemplate(
        what_went_wrong="Infrastructure adapters were written without a domain port interface.",
        why_it_matters=(
            "Breaks dependency inversion: the domain cannot depend on an abstraction.",
            "Couples callers to a concrete adapter.",
            "Makes adapters hard to replace in tests.",
        ),
        correct_pattern=(
            "// domain/port/outbound\n"
            "public interface PaymentPort {\n"
            "    PaymentResult process(PaymentRequest request);\n"
            "}\n"
            "\n"
            "// infrastructure/adapter/client\n"
            "@Component\n"
            "public class PaymentClient implements PaymentPort {\n"
            "    @Override\n"
            "    public PaymentResult process(PaymentRequest request) { ... }\n"
            "}\n"
        ),
        prevention_tip="Create the port interface BEFORE implementing the infrastructure component.",
        prompt_rule=(
            "**MANDATORY**: Every infrastructure component MUST implement a domain port interface.\n"
            "   - Create the interface in domain/port/outbound/ first\n"
            "   - Then implement it in infrastructure/adapter/"
        ),
    ),
    "DOMAIN_ANNOTATION": FeedbackTemplate(
        what_went_wrong="Spring or JPA annotations were placed on domain types.",
        why_it_matters=(
            "The domain layer must stay framework-agnostic.",
            "Persistence concerns leak into business rules.",
        ),
        correct_pattern=(
            "// domain: plain Java\n"
            "public class Order {\n"
            "    private final UUID id;\n"
            "}\n"
            "\n"
            "// infrastructure/adapter/persistence/entity\n"
            "@Entity\n"
            '@Table(name = "orders")\n'
            "public class OrderJpaEntity {\n"
            "    @Id\n"
            "    private UUID id;\n"
            "}\n"
        ),
        prevention_tip="Domain entities should NEVER import Spring or JPA packages.",
        prompt_rule=(
            "**FORBIDDEN**: NEVER use @Entity, @Table, @Component in the domain layer.\n"
            "   - Domain entities are plain Java objects\n"
            "   - JPA entities live in infrastructure/adapter/persistence/entity/"
        ),
    ),
    "FRAMEWORK_IMPORT_IN_DOMAIN": FeedbackTemplate(
        what_went_wrong="Domain code imported Spring or persistence packages.",
        why_it_matters=(
            "The domain cannot be compiled or tested without the framework on the classpath.",
            "Framework upgrades start touching business rules.",
        ),
        correct_pattern=(
            "// domain: JDK only (org.springframework.lang nullability is fine)\n"
            "import java.util.Objects;\n"
            "\n"
            "public class Order {\n"
            "    public Order(String customerId) {\n"
            "        this.customerId = Objects.requireNonNull(customerId);\n"
            "    }\n"
            "}\n"
        ),
        prevention_tip="Inside domain/, replace framework helpers with JDK equivalents.",
        prompt_rule=(
            "**FORBIDDEN**: NEVER import org.springframework.* in the domain layer.\n"
            "   - org.springframework.lang nullability annotations are the only exception"
        ),
    ),
    "BUSINESS_LOGIC_IN_WRONG_LAYER": FeedbackTemplate(
        what_went_wrong="Decision logic was found in controllers or adapters.",
        why_it_matters=(
            "Controllers and repositories end up with more than one responsibility.",
            "Business rules cannot be tested without HTTP or a database.",
        ),
        correct_pattern=(
            "@Service\n"
            "public class CreateOrderUseCase {\n"
            "    public Order execute(CreateOrderCommand command) {\n"
            "        Order order = new Order(command);\n"
            "        order.applyBusinessRules();\n"
            "        return repository.save(order);\n"
            "    }\n"
            "}\n"
        ),
        prevention_tip=(
            "Controllers handle HTTP, repositories handle persistence. Business logic goes in use cases or domain."
        ),
        prompt_rule=(
            "**RULE**: Business logic ONLY in domain entities and use cases.\n"
            "   - Controllers: HTTP handling only\n"
            "   - Repositories: persistence only\n"
            "   - Use cases: orchestration and business rules"
        ),
    ),
    "WRONG_DEPENDENCY_DIRECTION": FeedbackTemplate(
        what_went_wrong="Domain code imported application, infrastructure or api types.",
        why_it_matters=(
            "Dependencies must point inwards, towards the domain.",
            "Outer-layer changes start breaking business code.",
        ),
        correct_pattern=(
            "// domain depends on its own port\n"
            "public class OrderService {\n"
            "    private final PaymentPort payments;\n"
            "}\n"
        ),
        prevention_tip="Inside domain/, only import domain/ and the JDK.",
        prompt_rule="**RULE**: The domain layer never imports application, infrastructure or api packages.",
    ),
    "APPLICATION_DEPENDS_ON_INFRASTRUCTURE": FeedbackTemplate(
        what_went_wrong="Application services reached into infrastructure adapters directly.",
        why_it_matters=("Use cases become tied to one adapter implementation.",),
        correct_pattern=(
            "public class CreateOrderUseCaseImpl implements CreateOrderUseCase {\n"
            "    private final OrderRepository orders; // domain port\n"
            "}\n"
        ),
        prevention_tip="Inject domain ports into use cases, never adapters.",
    ),
    "MISPLACED_COMPONENT": FeedbackTemplate(
        what_went_wrong="Components were placed in a layer that does not match their role.",
        why_it_matters=("Layer boundaries only hold when each component lives where its role says.",),
        correct_pattern=(
            "application/usecase/CreateOrderUseCaseImpl.java\n"
            "api/controller/OrderController.java\n"
            "domain/port/outbound/OrderRepository.java  (interface)\n"
        ),
        prevention_tip="Name and place components together: *UseCase in application, *Controller in api.",
    ),
}


def feedback_template(rule_id: str, count: int) -> FeedbackTemplate:
    template = FEEDBACK_TEMPLATES.get(rule_id)
    if template is not None:
        return template
    return FeedbackTemplate(
        what_went_wrong=f"Pattern detected: {rule_id} ({count} occurrences).",
        why_it_matters=("Repeated violations of the same rule point at a habit, not an accident.",),
        correct_pattern="",
        prevention_tip="Review and update the coding patterns behind this rule.",
    )


def build_feedback(
    store: ViolationStore,
    agent_name: str,
    now: datetime,
    *,
    top_n: int = 5,
) -> FeedbackDocument:
    window = TimeWindow.trailing(now, days=LEARNING_WINDOW_DAYS)
    ranked = top_rules(store, agent_name, top_n, window)
    items = tuple(
        FeedbackItem(rule_id=r.rule_id, count=r.count, template=feedback_template(r.rule_id, r.count)) for r in ranked
    )
    recommendations = tuple(
        item.template.prompt_rule for item in items[:3] if item.template.prompt_rule is not None
    )
    return FeedbackDocument(
        agent_name=agent_name,
        generated_at=now,
        period=window,
        score=learning_score(store, agent_name, now),
        items=items,
        prompt_recommendations=recommendations,
    )


def dashboard(store: ViolationStore, now: datetime, *, top_n: int = 10) -> Dashboard:
    overall = TimeWindow.trailing(now, days=DASHBOARD_WINDOW_DAYS)
    recent = TimeWindow.trailing(now, days=LEARNING_WINDOW_DAYS)

    overall_agents = store.agent_summary(overall)
    agents = tuple(store.agent_summary(recent))
    return Dashboard(
        generated_at=now,
        window=overall,
        total_violations=sum(a.violations for a in overall_agents),
        auto_fixed=sum(a.auto_fixed for a in overall_agents),
        active_agents=len(overall_agents),
        agents=agents,
        scores=tuple(learning_score(store, a.agent_name, now) for a in agents),
        patterns=tuple(store.aggregate_patterns()[:top_n]),
        trend=tuple(store.daily_trend(recent)),
    )
