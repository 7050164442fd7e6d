from __future__ import annotations

import json
from typing import Any

from archsentinel import __version__
from archsentinel.analytics import Dashboard, FeedbackDocument, LearningScore
from archsentinel.session import SessionResult
from archsentinel.store import TimeWindow


def render_session_json(result: SessionResult) -> str:
    return json.dumps(result.to_payload(), indent=2, sort_keys=False)


def _window(window: TimeWindow) -> dict[str, str]:
    return {"start": window.start.isoformat(), "end": window.end.isoformat()}


def _score(score: LearningScore) -> dict[str, Any]:
    return {
        "agent": score.agent_name,
        "score": round(score.score, 2),
        "violationsThisPeriod": score.violations_this_period,
        "violationsPriorPeriod": score.violations_prior_period,
        "improvement": round(score.improvement, 2),
        "period": _window(score.period),
    }


def feedback_to_dict(doc: FeedbackDocument) -> dict[str, Any]:
    return {
        "tool": {"name": "ArchSentinel", "version": __version__},
        "agent": doc.agent_name,
        "generatedAt": doc.generated_at.isoformat(),
        "period": _window(doc.period),
        "learningScore": _score(doc.score),
        "topViolations": [
            {
                "ruleId": item.rule_id,
                "count": item.count,
                "whatWentWrong": item.template.what_went_wrong,
                "whyItMatters": list(item.template.why_it_matters),
                "correctPattern": item.template.correct_pattern,
                "preventionTip": item.template.prevention_tip,
            }
            for item in doc.items
        ],
        "promptRecommendations": list(doc.prompt_recommendations),
    }


def render_feedback_json(doc: FeedbackDocument) -> str:
    return json.dumps(feedback_to_dict(doc), indent=2, sort_keys=False)


def dashboard_to_dict(dash: Dashboard) -> dict[str, Any]:
    return {
        "tool": {"name": "ArchSentinel", "version": __version__},
        "generatedAt": dash.generated_at.isoformat(),
        "window": _window(dash.window),
        "overall": {
            "totalViolations": dash.total_violations,
            "autoFixed": dash.auto_fixed,
            "fixRate": round(dash.fix_rate, 4),
            "activeAgents": dash.active_agents,
        },
        "agents": [
            {
                "agent": a.agent_name,
                "violations": a.violations,
                "autoFixed": a.auto_fixed,
                "fixRate": round(a.fix_rate, 4),
            }
            for a in dash.agents
        ],
        "learningScores": [_score(s) for s in dash.scores],
        "topPatterns": [
            {
                "ruleId": p.rule_id,
                "count": p.occurrence_count,
                "firstSeen": p.first_seen.isoformat(),
                "lastSeen": p.last_seen.isoformat(),
                "fixRate": round(p.auto_fix_success_rate, 4),
            }
            for p in dash.patterns
        ],
        "dailyTrend": [{"date": d.date, "violations": d.violations, "autoFixed": d.auto_fixed} for d in dash.trend],
    }


def render_dashboard_json(dash: Dashboard) -> str:
    return json.dumps(dashboard_to_dict(dash), indent=2, sort_keys=False)
