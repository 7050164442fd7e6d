from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

from archsentinel.config import ArchSentinelConfig
from archsentinel.engine.context import SessionContext, SourceSet
from archsentinel.scanner import build_source_set, discover_files

JAVA_ROOT = "src/main/java/com/example"
FIXED_NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)

ORDER_ENTITY = """\
package com.example.domain.model;

import javax.persistence.*;

@Entity
@Table(name = "orders")
public class Order {

    @Id
    @GeneratedValue(strategy = GenerationType.AUTO)
    private Long id;

    @Column(name = "customer_id")
    private String customerId;

    public Long getId() {
        return id;
    }

    public void setId(Long id) {
        this.id = id;
    }

    public String getCustomerId() {
        return customerId;
    }

    public void setCustomerId(String customerId) {
        this.customerId = customerId;
    }
}
"""

PLAIN_ORDER = """\
package com.example.domain.model;

public class Order {
    private Long id;

    public Long getId() {
        return id;
    }
}
"""

PAYMENT_CLIENT = """\
package com.example.infrastructure.adapter.client;

import org.springframework.stereotype.Component;
import org.springframework.web.client.RestTemplate;

@Component
public class PaymentClient {

    private final RestTemplate restTemplate = new RestTemplate();

    public PaymentResult processPayment(PaymentRequest request) {
        return restTemplate.postForObject("/payments", request, PaymentResult.class);
    }

    public String checkStatus(String paymentId) {
        return restTemplate.getForObject("/payments/" + paymentId, String.class);
    }
}

class PaymentRequest {
}

class PaymentResult {
}
"""

ORDER_CONTROLLER = """\
package com.example.api.controller;

import java.math.BigDecimal;

public class OrderController {

    public String createOrder(OrderRequest request) {
        if (request.getAmount().compareTo(BigDecimal.ZERO) > 0) {
            if (request.getCustomerId() != null) {
                if (request.getItems().size() > 10) {
                    request.setDiscount(10);
                }
            }
        }
        return "created";
    }
}
"""

THIN_CONTROLLER = """\
package com.example.api.controller;

public class HealthController {

    public String health() {
        return "ok";
    }
}
"""


def write_java(root: Path, relative_path: str, content: str) -> Path:
    path = root / relative_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def java_path(suffix: str) -> str:
    return f"{JAVA_ROOT}/{suffix}"


def make_ctx(root: Path, config: ArchSentinelConfig | None = None, **kwargs) -> SessionContext:  # noqa: ANN003
    return SessionContext(
        project_root=root,
        scan_path=root,
        config=config or ArchSentinelConfig(),
        **kwargs,
    )


def scan(ctx: SessionContext, *, workers: int = 1) -> SourceSet:
    return build_source_set(ctx, discover_files(ctx), workers=workers)
