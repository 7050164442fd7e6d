from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from types import MappingProxyType

import pytest

from archsentinel.config import DEFAULT_ADAPTER_SUFFIXES, DEFAULT_LAYERS
from archsentinel.engine.detection import detect
from archsentinel.remediation.applier import FixApplier, implements_edit
from archsentinel.remediation.plan import CreateFile, FixPlan, InsertImplementsClause, ModifyFile, Patch, TextEdit
from archsentinel.remediation.planner import (
    MARKER,
    base_package,
    plan_business_logic,
    plan_domain_annotation,
    plan_missing_interface,
    port_name_for,
)
from archsentinel.remediation.synthesis import JavaField, JavaMethod, JavaTypeFragment, render_java
from archsentinel.utils import content_hash
from helpers import ORDER_CONTROLLER, ORDER_ENTITY, PAYMENT_CLIENT, java_path, make_ctx, scan, write_java

CLIENT = java_path("infrastructure/adapter/client/PaymentClient.java")
PORT = java_path("domain/port/outbound/PaymentPort.java")
ORDER = java_path("domain/model/Order.java")
ENTITY = java_path("infrastructure/adapter/persistence/entity/OrderJpaEntity.java")
MAPPER = java_path("infrastructure/adapter/persistence/mapper/OrderMapper.java")


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("PaymentClient", "PaymentPort"),
        ("OrderRepositoryImpl", "OrderRepository"),
        ("ShippingAdapter", "ShippingPort"),
        ("Client", "ClientPort"),
    ],
)
def test_port_name_for(name: str, expected: str) -> None:
    assert port_name_for(name, DEFAULT_ADAPTER_SUFFIXES) == expected


def test_base_package_stops_at_first_layer_segment() -> None:
    assert base_package("com.example.infrastructure.adapter.client", DEFAULT_LAYERS) == "com.example"
    assert base_package("domain.model", DEFAULT_LAYERS) == ""
    assert base_package("com.example.util", DEFAULT_LAYERS) == "com.example.util"


def test_render_java_interface_and_class() -> None:
    interface = JavaTypeFragment(
        package="com.acme.domain.port",
        name="PaymentPort",
        kind="interface",
        imports=("com.acme.domain.port.Same", "com.acme.domain.model.Money"),
        methods=(JavaMethod(name="pay", return_type="Money", parameters="(long cents)"),),
    )
    text = render_java(interface)
    assert text.startswith("package com.acme.domain.port;\n\nimport com.acme.domain.model.Money;\n\n")
    assert "import com.acme.domain.port.Same;" not in text
    assert "public interface PaymentPort {\n\n    Money pay(long cents);\n}\n" in text

    cls = JavaTypeFragment(
        package="com.acme",
        name="Box",
        annotations=("@Entity",),
        fields=(JavaField(type_text="Long", name="id", annotations=("@Id",)),),
        methods=(JavaMethod(name="getId", return_type="Long", body=("return id;",)),),
    )
    rendered = render_java(cls)
    assert "@Entity\npublic class Box {\n\n    @Id\n    private Long id;\n" in rendered
    assert "    public Long getId() {\n        return id;\n    }\n}\n" in rendered


def test_patch_rejects_overlapping_edits() -> None:
    patch = Patch(base_hash="", edits=(TextEdit(0, 4, "x"), TextEdit(2, 6, "y")))
    with pytest.raises(ValueError, match="overlapping"):
        patch.apply(b"0123456789")
    assert Patch(base_hash="", edits=(TextEdit(8, 10, "!"), TextEdit(0, 0, ">"))).apply(b"0123456789") == b">01234567!"


def test_implements_edit_appends_to_existing_list() -> None:
    data = b"package a;\n\npublic class Foo extends Base implements Bar {\n}\n"
    edit = implements_edit(data, "Foo", "Baz")
    assert edit is not None
    patched = data[: edit.start] + edit.replacement.encode() + data[edit.end :]
    assert b"public class Foo extends Base implements Bar, Baz {" in patched

    assert implements_edit(patched, "Foo", "Baz") is None

    plain = b"public class Foo<T> extends Base<T> {\n}\n"
    edit = implements_edit(plain, "Foo", "Baz")
    assert edit is not None
    assert (plain[: edit.start] + edit.replacement.encode() + plain[edit.end :]).startswith(
        b"public class Foo<T> extends Base<T> implements Baz {"
    )


def test_missing_interface_fix_creates_port_and_implements_it(tmp_path: Path) -> None:
    write_java(tmp_path, CLIENT, PAYMENT_CLIENT)
    ctx = make_ctx(tmp_path)
    units = scan(ctx)
    unit = units.get(CLIENT)
    assert unit is not None

    plan = plan_missing_interface(unit, units, ctx)
    assert [type(op) for op in plan.operations] == [CreateFile, ModifyFile, InsertImplementsClause]
    assert plan.created_paths == (PORT,)
    assert plan.expected_hashes == {CLIENT: unit.content_hash, PORT: None}

    result = FixApplier(tmp_path).apply(plan)
    assert result.outcome == "fixed"
    assert result.committed
    assert set(result.touched) == {CLIENT, PORT}

    port = (tmp_path / PORT).read_text(encoding="utf-8")
    assert port.startswith("package com.example.domain.port.outbound;\n")
    assert "public interface PaymentPort {" in port
    assert "    PaymentResult processPayment(PaymentRequest request);" in port
    assert "    String checkStatus(String paymentId);" in port

    client = (tmp_path / CLIENT).read_text(encoding="utf-8")
    assert "import com.example.domain.port.outbound.PaymentPort;" in client
    assert "public class PaymentClient implements PaymentPort {" in client
    assert "    @Override\n    public PaymentResult processPayment(PaymentRequest request) {" in client
    assert "    @Override\n    public String checkStatus(String paymentId) {" in client

    rescanned = scan(ctx)
    assert not rescanned.diagnostics
    assert detect(rescanned, ctx.config).violations == ()


def test_missing_interface_fix_reuses_existing_port(tmp_path: Path) -> None:
    write_java(tmp_path, CLIENT, PAYMENT_CLIENT)
    write_java(
        tmp_path,
        PORT,
        "package com.example.domain.port.outbound;\n\npublic interface PaymentPort {\n}\n",
    )
    ctx = make_ctx(tmp_path)
    units = scan(ctx)
    unit = units.get(CLIENT)
    assert unit is not None

    plan = plan_missing_interface(unit, units, ctx)
    assert plan.created_paths == ()
    assert plan.description.startswith("Reused port com.example.domain.port.outbound.PaymentPort")

    assert FixApplier(tmp_path).apply(plan).outcome == "fixed"
    client = (tmp_path / CLIENT).read_text(encoding="utf-8")
    assert "implements PaymentPort" in client
    assert "@Override" not in client


def test_domain_annotation_fix_moves_persistence_mapping(tmp_path: Path) -> None:
    write_java(tmp_path, ORDER, ORDER_ENTITY)
    ctx = make_ctx(tmp_path)
    units = scan(ctx)
    unit = units.get(ORDER)
    assert unit is not None

    plan = plan_domain_annotation(unit, units, ctx)
    assert set(plan.created_paths) == {ENTITY, MAPPER}
    assert "created OrderJpaEntity and OrderMapper" in plan.description

    assert FixApplier(tmp_path).apply(plan).outcome == "fixed"

    order = (tmp_path / ORDER).read_text(encoding="utf-8")
    assert "@" not in order
    assert "javax.persistence" not in order
    assert "public class Order {" in order
    assert "    private Long id;" in order
    assert "    private String customerId;" in order
    assert "    public void setCustomerId(String customerId) {" in order

    entity = (tmp_path / ENTITY).read_text(encoding="utf-8")
    assert "package com.example.infrastructure.adapter.persistence.entity;" in entity
    assert "import javax.persistence.*;" in entity
    assert '@Entity\n@Table(name = "orders")\npublic class OrderJpaEntity {' in entity
    assert "    @Id\n    @GeneratedValue(strategy = GenerationType.AUTO)\n    private Long id;" in entity
    assert '    @Column(name = "customer_id")\n    private String customerId;' in entity
    assert "    public String getCustomerId() {" in entity

    mapper = (tmp_path / MAPPER).read_text(encoding="utf-8")
    assert "import com.example.domain.model.Order;" in mapper
    assert "import com.example.infrastructure.adapter.persistence.entity.OrderJpaEntity;" in mapper
    assert "domain.setCustomerId(entity.getCustomerId());" in mapper
    assert "entity.setId(domain.getId());" in mapper

    rescanned = scan(ctx)
    assert not rescanned.diagnostics
    assert detect(rescanned, ctx.config).violations == ()


def test_domain_annotation_fix_keeps_imports_still_in_use(tmp_path: Path) -> None:
    write_java(
        tmp_path,
        ORDER,
        "package com.example.domain.model;\n\n"
        "import org.springframework.stereotype.Component;\n"
        "import org.springframework.util.Assert;\n\n"
        "@Component\n"
        "public class Order {\n"
        "    public void check(String id) {\n"
        "        Assert.notNull(id, \"id\");\n"
        "    }\n"
        "}\n",
    )
    ctx = make_ctx(tmp_path)
    units = scan(ctx)
    unit = units.get(ORDER)
    assert unit is not None

    plan = plan_domain_annotation(unit, units, ctx)
    assert plan.created_paths == ()
    assert FixApplier(tmp_path).apply(plan).outcome == "fixed"

    order = (tmp_path / ORDER).read_text(encoding="utf-8")
    assert "@Component" not in order
    assert "import org.springframework.stereotype.Component;" not in order
    assert "import org.springframework.util.Assert;" in order

    remaining = detect(scan(ctx), ctx.config).violations
    assert [v.rule_id for v in remaining] == ["FRAMEWORK_IMPORT_IN_DOMAIN"]
    assert "org.springframework.util.Assert" in remaining[0].message


def test_domain_annotation_fix_leaves_non_framework_annotations(tmp_path: Path) -> None:
    write_java(
        tmp_path,
        ORDER,
        "package com.example.domain.model;\n\n"
        "import java.beans.Transient;\n"
        "import lombok.Value;\n"
        "import org.springframework.stereotype.Component;\n\n"
        "@Value\n"
        "@Component\n"
        "public class Order {\n"
        "    String id;\n\n"
        "    @Transient\n"
        "    public String label() {\n"
        "        return id;\n"
        "    }\n"
        "}\n",
    )
    ctx = make_ctx(tmp_path)
    units = scan(ctx)
    unit = units.get(ORDER)
    assert unit is not None

    plan = plan_domain_annotation(unit, units, ctx)
    assert plan.description == "Removed @Component from Order"
    assert plan.created_paths == ()
    assert FixApplier(tmp_path).apply(plan).outcome == "fixed"

    order = (tmp_path / ORDER).read_text(encoding="utf-8")
    assert "@Component" not in order
    assert "import org.springframework" not in order
    for kept in ("import lombok.Value;", "import java.beans.Transient;", "@Value", "@Transient"):
        assert kept in order
    assert detect(scan(ctx), ctx.config).violations == ()


def test_business_logic_fix_is_manual_and_marks_once(tmp_path: Path) -> None:
    controller = java_path("api/controller/OrderController.java")
    use_case = java_path("application/usecase/CreateOrderUseCase.java")
    write_java(tmp_path, controller, ORDER_CONTROLLER)
    ctx = make_ctx(tmp_path)
    units = scan(ctx)
    unit = units.get(controller)
    assert unit is not None

    plan = plan_business_logic(unit, units, ctx)
    assert plan.manual
    assert plan.created_paths == (use_case,)

    result = FixApplier(tmp_path).apply(plan)
    assert result.outcome == "manual_fix_required"
    assert result.committed

    text = (tmp_path / controller).read_text(encoding="utf-8")
    assert f"    {MARKER} move the decision logic of createOrder()" in text
    assert "throw new UnsupportedOperationException" in (tmp_path / use_case).read_text(encoding="utf-8")

    rescanned = scan(ctx)
    again = plan_business_logic(rescanned.units[controller], rescanned, ctx)
    assert again.manual
    assert again.operations == ()
    assert FixApplier(tmp_path).apply(again).outcome == "manual_fix_required"


def test_stale_plan_is_a_conflict(tmp_path: Path) -> None:
    write_java(tmp_path, CLIENT, PAYMENT_CLIENT)
    ctx = make_ctx(tmp_path)
    units = scan(ctx)
    plan = plan_missing_interface(units.units[CLIENT], units, ctx)

    edited = PAYMENT_CLIENT.replace("checkStatus", "status")
    (tmp_path / CLIENT).write_text(edited, encoding="utf-8")

    result = FixApplier(tmp_path).apply(plan)
    assert result.outcome == "conflict"
    assert not result.committed
    assert "changed since it was scanned" in result.message
    assert (tmp_path / CLIENT).read_text(encoding="utf-8") == edited
    assert not (tmp_path / PORT).exists()


def test_failure_mid_plan_rolls_everything_back(tmp_path: Path) -> None:
    target = write_java(tmp_path, CLIENT, PAYMENT_CLIENT)
    original = target.read_bytes()
    created = java_path("domain/port/outbound/deep/NewPort.java")

    plan = FixPlan(
        rule_id="MISSING_INTERFACE",
        path=CLIENT,
        description="broken plan",
        operations=(
            CreateFile(created, "package x;\n\npublic interface NewPort {\n}\n"),
            ModifyFile(CLIENT, Patch(base_hash=content_hash(original), edits=(TextEdit(0, 0, "// edited\n"),))),
            ModifyFile(CLIENT, Patch(base_hash="not-the-hash", edits=(TextEdit(0, 0, "// again\n"),))),
        ),
        expected_hashes=MappingProxyType({CLIENT: content_hash(original), created: None}),
    )

    result = FixApplier(tmp_path).apply(plan)
    assert result.outcome == "conflict"
    assert target.read_bytes() == original
    assert not (tmp_path / created).exists()
    assert not (tmp_path / java_path("domain")).exists()


def test_plan_without_operations_is_not_fixable(tmp_path: Path) -> None:
    plan = FixPlan(rule_id="X_RULE", path="A.java", description="nothing to do")
    result = FixApplier(tmp_path).apply(plan)
    assert result.outcome == "not_fixable"
    assert not result.committed


def _create_plan(relative_path: str, name: str) -> FixPlan:
    return FixPlan(
        rule_id="MISSING_INTERFACE",
        path=relative_path,
        description=f"Created {name}",
        operations=(CreateFile(relative_path, f"package x;\n\npublic interface {name} {{\n}}\n"),),
        expected_hashes=MappingProxyType({relative_path: None}),
    )


@pytest.mark.parametrize("round_no", range(20))
def test_disjoint_plans_share_new_directories_concurrently(tmp_path: Path, round_no: int) -> None:
    applier = FixApplier(tmp_path)
    plans = [
        _create_plan(java_path(f"domain/port/outbound/r{round_no}/Svc{i}Port.java"), f"Svc{i}Port") for i in range(16)
    ]

    with ThreadPoolExecutor(max_workers=16) as executor:
        results = list(executor.map(applier.apply, plans))

    assert [(r.outcome, r.message) for r in results] == [("fixed", p.description) for p in plans]
    for plan in plans:
        assert (tmp_path / plan.path).exists()


def test_rollback_keeps_directories_other_plans_wrote_into(tmp_path: Path) -> None:
    target = write_java(tmp_path, CLIENT, PAYMENT_CLIENT)
    original = target.read_bytes()
    shared = java_path("domain/port/outbound/shared")
    applier = FixApplier(tmp_path)

    failing = FixPlan(
        rule_id="MISSING_INTERFACE",
        path=CLIENT,
        description="broken plan",
        operations=(
            CreateFile(f"{shared}/APort.java", "package x;\n\npublic interface APort {\n}\n"),
            ModifyFile(CLIENT, Patch(base_hash="not-the-hash", edits=(TextEdit(0, 0, "// again\n"),))),
        ),
        expected_hashes=MappingProxyType({CLIENT: content_hash(original), f"{shared}/APort.java": None}),
    )
    ok = _create_plan(f"{shared}/BPort.java", "BPort")

    with ThreadPoolExecutor(max_workers=2) as executor:
        failed_result, ok_result = executor.map(applier.apply, [failing, ok])

    assert failed_result.outcome == "conflict"
    assert ok_result.outcome == "fixed"
    assert (tmp_path / shared / "BPort.java").exists()
    assert not (tmp_path / shared / "APort.java").exists()
    assert target.read_bytes() == original
