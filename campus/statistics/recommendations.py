"""Threshold-based advice derived from statistics snapshots."""

from typing import List

from campus.statistics.aggregator import StatisticsSnapshot

SEVERE_RATE = 20.0
WARNING_RATE = 10.0
NOTICE_RATE = 5.0
HIGH_RISK_TYPE_RATE = 15.0


def recommendations_for_user(snapshot: StatisticsSnapshot) -> List[str]:
    rate = snapshot.timeout_rate
    if rate is None:
        return [
            "[Info] No order totals for this period yet; keep to the delivery time limits.",
        ]

    advice = []
    if rate > SEVERE_RATE:
        advice.append(
            f"[Severe] Your timeout rate is {rate:.1f}%, above {SEVERE_RATE:.0f}%. "
            "This may affect your ability to accept orders; improve delivery speed now."
        )
    elif rate > WARNING_RATE:
        advice.append(
            f"[Warning] Your timeout rate is {rate:.1f}%, above {WARNING_RATE:.0f}%. "
            "Improve delivery speed to avoid restrictions."
        )
    elif rate > NOTICE_RATE:
        advice.append("[Notice] Your timeout rate is slightly high; plan routes ahead of pickup.")
    else:
        advice.append("[Good] Your timeout rate is at a healthy level, keep it up!")

    for order_type, counts in sorted(snapshot.by_type.items(), key=lambda item: item[0].value):
        if counts.orders and 100.0 * counts.timeouts / counts.orders > HIGH_RISK_TYPE_RATE:
            advice.append(
                f"[{order_type.value}] Timeouts are concentrated in {order_type.value} orders; "
                "prioritise improving those deliveries."
            )
    if snapshot.interventions:
        advice.append(
            f"[Intervention] {snapshot.interventions} of your orders were handed to the platform today."
        )
    return advice


def recommendations_for_system(snapshot: StatisticsSnapshot) -> List[str]:
    advice = []
    rate = snapshot.timeout_rate
    if rate is not None:
        if rate > SEVERE_RATE:
            advice.append(
                f"[Severe] System timeout rate is {rate:.1f}%; add handlers or pause new orders."
            )
        elif rate > WARNING_RATE:
            advice.append(f"[Warning] System timeout rate is {rate:.1f}%; review dispatch capacity.")

    for order_type, counts in sorted(snapshot.by_type.items(), key=lambda item: item[0].value):
        if counts.orders and 100.0 * counts.timeouts / counts.orders > HIGH_RISK_TYPE_RATE:
            advice.append(
                f"[{order_type.value}] {counts.timeouts} timeouts across {counts.orders} orders; "
                "consider extra handlers for this service."
            )
    if snapshot.interventions:
        advice.append(
            f"[Intervention] {snapshot.interventions} orders need platform follow-up today."
        )
    if not advice:
        advice.append("[Status] No elevated timeout risk detected; keep monitoring.")
    return advice
