from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from types import MappingProxyType

import pytest

from archsentinel.config import ArchSentinelConfig, RulesConfig
from archsentinel.engine.detection import detect
from archsentinel.rules.layering import MisplacedComponent
from archsentinel.rules.registry import all_rules, rule_by_id, rule_ids
from helpers import (
    ORDER_CONTROLLER,
    ORDER_ENTITY,
    PAYMENT_CLIENT,
    PLAIN_ORDER,
    THIN_CONTROLLER,
    java_path,
    make_ctx,
    scan,
    write_java,
)

MONEY = java_path("domain/model/Money.java")

PAYMENT_PORT = """\
package com.example.domain.port.outbound;

public interface PaymentPort {
    String checkStatus(String paymentId);
}
"""


def _found(tmp_path: Path, config: ArchSentinelConfig | None = None) -> set[tuple[str, str]]:
    ctx = make_ctx(tmp_path, config)
    result = detect(scan(ctx), ctx.config)
    return {(v.rule_id, v.path) for v in result.violations}


def test_registry_lists_the_layering_rules() -> None:
    assert rule_ids() == {
        "MISSING_INTERFACE",
        "DOMAIN_ANNOTATION",
        "FRAMEWORK_IMPORT_IN_DOMAIN",
        "BUSINESS_LOGIC_IN_WRONG_LAYER",
        "WRONG_DEPENDENCY_DIRECTION",
        "APPLICATION_DEPENDS_ON_INFRASTRUCTURE",
        "MISPLACED_COMPONENT",
    }
    ids = [r.meta.rule_id for r in all_rules()]
    assert ids == sorted(ids)
    fixable = {r.meta.rule_id for r in all_rules() if r.meta.auto_fixable}
    assert fixable == {"MISSING_INTERFACE", "DOMAIN_ANNOTATION", "BUSINESS_LOGIC_IN_WRONG_LAYER"}
    assert rule_by_id("NOPE") is None


def test_missing_interface_fires_for_adapter_without_port(tmp_path: Path) -> None:
    rel = java_path("infrastructure/adapter/client/PaymentClient.java")
    write_java(tmp_path, rel, PAYMENT_CLIENT)

    ctx = make_ctx(tmp_path)
    result = detect(scan(ctx), ctx.config)
    assert [(v.rule_id, v.path, v.severity) for v in result.violations] == [
        ("MISSING_INTERFACE", rel, "CRITICAL")
    ]
    assert "PaymentPort" in (result.violations[0].suggestion or "")


def test_missing_interface_silent_when_port_is_implemented(tmp_path: Path) -> None:
    write_java(tmp_path, java_path("domain/port/outbound/PaymentPort.java"), PAYMENT_PORT)
    write_java(
        tmp_path,
        java_path("infrastructure/adapter/client/PaymentClient.java"),
        PAYMENT_CLIENT.replace(
            "import org.springframework.stereotype.Component;",
            "import com.example.domain.port.outbound.PaymentPort;\nimport org.springframework.stereotype.Component;",
        ).replace("public class PaymentClient {", "public class PaymentClient implements PaymentPort {"),
    )
    assert _found(tmp_path) == set()


def test_missing_interface_ignores_non_adapters_and_other_layers(tmp_path: Path) -> None:
    write_java(
        tmp_path,
        java_path("infrastructure/config/AppConfig.java"),
        "package com.example.infrastructure.config;\n\npublic class AppConfig {\n}\n",
    )
    write_java(
        tmp_path,
        java_path("application/service/MailClient.java"),
        "package com.example.application.service;\n\npublic class MailClient {\n}\n",
    )
    assert _found(tmp_path) == set()


def test_implementing_a_non_port_interface_still_fires(tmp_path: Path) -> None:
    write_java(
        tmp_path,
        java_path("infrastructure/adapter/client/AuditClient.java"),
        "package com.example.infrastructure.adapter.client;\n\n"
        "public class AuditClient implements java.io.Serializable {\n}\n",
    )
    assert _found(tmp_path) == {("MISSING_INTERFACE", java_path("infrastructure/adapter/client/AuditClient.java"))}


def test_domain_annotation_fires_on_jpa_entity(tmp_path: Path) -> None:
    rel = java_path("domain/model/Order.java")
    write_java(tmp_path, rel, ORDER_ENTITY)
    ctx = make_ctx(tmp_path)
    result = detect(scan(ctx), ctx.config)

    assert [(v.rule_id, v.path) for v in result.violations] == [("DOMAIN_ANNOTATION", rel)]
    message = result.violations[0].message
    for name in ("@Column", "@Entity", "@GeneratedValue", "@Id", "@Table"):
        assert name in message


def test_plain_domain_object_is_clean(tmp_path: Path) -> None:
    write_java(tmp_path, java_path("domain/model/Order.java"), PLAIN_ORDER)
    assert _found(tmp_path) == set()


@pytest.mark.parametrize(
    "source",
    [
        "package com.example.domain.model;\n\n"
        "import lombok.Value;\n\n"
        "@Value\n"
        "public class Money {\n"
        "    long cents;\n"
        "}\n",
        "package com.example.domain.model;\n\n"
        "import java.beans.Transient;\n\n"
        "public class Money {\n"
        "    private long cents;\n\n"
        "    @Transient\n"
        "    public String getLabel() {\n"
        "        return \"\" + cents;\n"
        "    }\n"
        "}\n",
        "package com.example.domain.model;\n\n"
        "@Value\n"
        "public class Money {\n"
        "}\n",
    ],
    ids=["lombok-value", "java-beans-transient", "unresolved"],
)
def test_domain_annotation_resolves_names_through_imports(tmp_path: Path, source: str) -> None:
    write_java(tmp_path, MONEY, source)
    assert _found(tmp_path) == set()


def test_domain_annotation_flags_spring_value(tmp_path: Path) -> None:
    write_java(
        tmp_path,
        MONEY,
        "package com.example.domain.model;\n\n"
        "import org.springframework.beans.factory.annotation.Value;\n\n"
        "public class Money {\n"
        "    @Value(\"${money.currency}\")\n"
        "    private String currency;\n"
        "}\n",
    )
    ctx = make_ctx(tmp_path)
    result = detect(scan(ctx), ctx.config)
    assert [(v.rule_id, v.path) for v in result.violations] == [("DOMAIN_ANNOTATION", MONEY)]
    assert "@Value" in result.violations[0].message


def test_framework_import_in_domain(tmp_path: Path) -> None:
    write_java(
        tmp_path,
        MONEY,
        "package com.example.domain.model;\n\n"
        "import javax.persistence.EntityManager;\n"
        "import org.springframework.lang.Nullable;\n"
        "import org.springframework.util.Assert;\n\n"
        "public class Money {\n"
        "    @Nullable\n"
        "    private EntityManager em;\n\n"
        "    public Money(long cents) {\n"
        "        Assert.isTrue(cents >= 0, \"cents\");\n"
        "    }\n"
        "}\n",
    )
    ctx = make_ctx(tmp_path)
    result = detect(scan(ctx), ctx.config)
    assert [(v.rule_id, v.severity) for v in result.violations] == [("FRAMEWORK_IMPORT_IN_DOMAIN", "HIGH")]
    message = result.violations[0].message
    assert "javax.persistence.EntityManager" in message
    assert "org.springframework.util.Assert" in message
    assert "org.springframework.lang" not in message


def test_spring_nullability_and_outer_layers_are_allowed(tmp_path: Path) -> None:
    write_java(
        tmp_path,
        MONEY,
        "package com.example.domain.model;\n\n"
        "import org.springframework.lang.NonNull;\n\n"
        "public class Money {\n"
        "    @NonNull\n"
        "    private String currency = \"EUR\";\n"
        "}\n",
    )
    write_java(
        tmp_path,
        java_path("application/service/Billing.java"),
        "package com.example.application.service;\n\n"
        "import org.springframework.util.Assert;\n\n"
        "public class Billing {\n"
        "}\n",
    )
    assert _found(tmp_path) == set()


def test_business_logic_in_controller(tmp_path: Path) -> None:
    write_java(tmp_path, java_path("api/controller/OrderController.java"), ORDER_CONTROLLER)
    write_java(tmp_path, java_path("api/controller/HealthController.java"), THIN_CONTROLLER)
    assert _found(tmp_path) == {
        ("BUSINESS_LOGIC_IN_WRONG_LAYER", java_path("api/controller/OrderController.java")),
    }


def test_business_logic_threshold_is_configurable(tmp_path: Path) -> None:
    write_java(tmp_path, java_path("api/controller/OrderController.java"), ORDER_CONTROLLER)
    base = ArchSentinelConfig()
    strict = replace(base, layering=replace(base.layering, logic_min_constructs=10))
    assert _found(tmp_path, strict) == set()


def test_wrong_dependency_direction_uses_import_names(tmp_path: Path) -> None:
    rel = java_path("domain/service/OrderService.java")
    write_java(
        tmp_path,
        rel,
        "package com.example.domain.service;\n\n"
        "import com.example.infrastructure.adapter.client.PaymentClient;\n"
        "import java.util.List;\n\n"
        "public class OrderService {\n"
        "    private PaymentClient client;\n"
        "}\n",
    )
    ctx = make_ctx(tmp_path)
    result = detect(scan(ctx), ctx.config)
    assert [(v.rule_id, v.path) for v in result.violations] == [("WRONG_DEPENDENCY_DIRECTION", rel)]
    assert "PaymentClient (infrastructure)" in result.violations[0].message


def test_wrong_dependency_direction_resolves_wildcards_against_the_set(tmp_path: Path) -> None:
    write_java(tmp_path, java_path("api/dto/OrderDto.java"), "package com.example.api.dto;\n\npublic class OrderDto {\n}\n")
    write_java(
        tmp_path,
        java_path("domain/model/Invoice.java"),
        "package com.example.domain.model;\n\nimport com.example.api.dto.*;\n\npublic class Invoice {\n}\n",
    )
    assert ("WRONG_DEPENDENCY_DIRECTION", java_path("domain/model/Invoice.java")) in _found(tmp_path)


def test_application_depends_on_infrastructure(tmp_path: Path) -> None:
    rel = java_path("application/usecase/PayOrderUseCase.java")
    write_java(
        tmp_path,
        rel,
        "package com.example.application.usecase;\n\n"
        "import com.example.infrastructure.adapter.client.PaymentClient;\n\n"
        "public class PayOrderUseCase {\n"
        "    private PaymentClient client;\n"
        "}\n",
    )
    assert _found(tmp_path) == {("APPLICATION_DEPENDS_ON_INFRASTRUCTURE", rel)}


def test_misplaced_components(tmp_path: Path) -> None:
    controller = java_path("application/web/OrderController.java")
    use_case = java_path("api/CreateOrderUseCase.java")
    repository = java_path("domain/repository/OrderRepository.java")
    port = java_path("domain/port/inbound/CreateOrderUseCase.java")
    write_java(tmp_path, controller, "package com.example.application.web;\n\npublic class OrderController {\n}\n")
    write_java(tmp_path, use_case, "package com.example.api;\n\npublic class CreateOrderUseCase {\n}\n")
    write_java(tmp_path, repository, "package com.example.domain.repository;\n\npublic class OrderRepository {\n}\n")
    write_java(
        tmp_path,
        port,
        "package com.example.domain.port.inbound;\n\npublic interface CreateOrderUseCase {\n    void execute();\n}\n",
    )

    assert _found(tmp_path) == {
        ("MISPLACED_COMPONENT", controller),
        ("MISPLACED_COMPONENT", use_case),
        ("MISPLACED_COMPONENT", repository),
    }


def test_severity_overrides_and_rule_filter(tmp_path: Path) -> None:
    write_java(tmp_path, java_path("domain/model/Order.java"), ORDER_ENTITY)
    write_java(tmp_path, java_path("infrastructure/adapter/client/PaymentClient.java"), PAYMENT_CLIENT)
    config = ArchSentinelConfig(
        rules=RulesConfig(severity_overrides=MappingProxyType({"DOMAIN_ANNOTATION": "LOW"})),
    )
    ctx = make_ctx(tmp_path, config)
    units = scan(ctx)

    result = detect(units, config)
    severities = {v.rule_id: v.severity for v in result.violations}
    assert severities == {"DOMAIN_ANNOTATION": "LOW", "MISSING_INTERFACE": "CRITICAL"}

    only = detect(units, config, rule_filter=["MISSING_INTERFACE"])
    assert [v.rule_id for v in only.violations] == ["MISSING_INTERFACE"]

    restricted = detect(units, config, restrict_to=[java_path("domain/model/Order.java")])
    assert [v.rule_id for v in restricted.violations] == ["DOMAIN_ANNOTATION"]


def test_disabled_rules_do_not_run(tmp_path: Path) -> None:
    write_java(tmp_path, java_path("domain/model/Order.java"), ORDER_ENTITY)
    config = ArchSentinelConfig(rules=RulesConfig(disable=("DOMAIN_ANNOTATION",)))
    assert _found(tmp_path, config) == set()


def test_failing_rule_becomes_detection_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    write_java(tmp_path, java_path("domain/model/Order.java"), ORDER_ENTITY)
    write_java(tmp_path, java_path("infrastructure/adapter/client/PaymentClient.java"), PAYMENT_CLIENT)

    def boom(self, unit, units, layering):  # noqa: ANN001, ANN202
        raise RuntimeError("rule exploded")

    monkeypatch.setattr(MisplacedComponent, "detect", boom)
    ctx = make_ctx(tmp_path)
    result = detect(scan(ctx), ctx.config, workers=4)

    assert {v.rule_id for v in result.violations} == {"DOMAIN_ANNOTATION", "MISSING_INTERFACE"}
    errors = [d for d in result.diagnostics if d.kind == "DetectionError"]
    assert len(errors) == 2
    assert {d.rule_id for d in errors} == {"MISPLACED_COMPONENT"}
    assert all("rule exploded" in d.message for d in errors)


def test_detection_is_deterministic_across_workers(tmp_path: Path) -> None:
    write_java(tmp_path, java_path("domain/model/Order.java"), ORDER_ENTITY)
    write_java(tmp_path, java_path("infrastructure/adapter/client/PaymentClient.java"), PAYMENT_CLIENT)
    write_java(tmp_path, java_path("api/controller/OrderController.java"), ORDER_CONTROLLER)
    ctx = make_ctx(tmp_path)
    units = scan(ctx)

    assert detect(units, ctx.config, workers=1) == detect(units, ctx.config, workers=8)
