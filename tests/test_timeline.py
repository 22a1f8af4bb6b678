from packages.core.schemas.chart import EntityCategory
from packages.pipeline.steps.aggregate import aggregate_entities
from packages.pipeline.steps.timeline import build_timeline
from tests.builders import diagnosis, document, entity, intake_entities, medication, ts


def _labels(grouped, timeline) -> list:
    index = {item.id: item for items in grouped.values() for item in items}
    return [index[event.entity_ref].label() for event in timeline.events]


def test_events_are_chronological_with_undated_last() -> None:
    documents = [
        document(
            "doc-a",
            [
                diagnosis("Asthma"),
                diagnosis("Hypertension", "2021-06-15"),
                medication(name="Lisinopril", dosage="10mg", start_date="2021-06-20"),
                diagnosis("Diabetes", "2019"),
            ],
        )
    ]
    grouped = aggregate_entities(intake_entities("p1", documents))
    timeline = build_timeline(grouped)

    assert _labels(grouped, timeline) == [
        "Diabetes",
        "Hypertension",
        "Lisinopril 10mg twice daily",
        "Asthma",
    ]
    assert timeline.events[-1].timestamp is None


def test_coarser_date_sorts_before_finer_date_on_same_lower_bound() -> None:
    documents = [
        document("doc-a", [diagnosis("Day precise", "2022-03-01"), diagnosis("Month only", "2022-03")])
    ]
    grouped = aggregate_entities(intake_entities("p1", documents))

    assert _labels(grouped, build_timeline(grouped)) == ["Month only", "Day precise"]


def test_same_date_orders_by_extraction_time() -> None:
    documents = [
        document("doc-late", [diagnosis("Later", "2022-03-01")], extraction_timestamp=ts(15)),
        document("doc-early", [diagnosis("Earlier", "2022-03-01")], extraction_timestamp=ts(8)),
    ]
    grouped = aggregate_entities(intake_entities("p1", documents))

    assert _labels(grouped, build_timeline(grouped)) == ["Earlier", "Later"]


def test_every_entity_appears_once_including_conflicts() -> None:
    documents = [
        document("doc-a", [medication(dosage="500mg", confidence=0.1)]),
        document("doc-b", [medication(dosage="850mg")]),
        document(
            "doc-c",
            [entity("lab_test", {"test_name": "HbA1c", "value": "7.1", "collected_date": "2024-01-11"})],
        ),
    ]
    grouped = aggregate_entities(intake_entities("p1", documents))
    timeline = build_timeline(grouped)

    refs = [event.entity_ref for event in timeline.events]
    assert len(refs) == len(set(refs)) == 3
    assert {event.category for event in timeline.events} == {
        EntityCategory.MEDICATION,
        EntityCategory.LAB_TEST,
    }


def test_timeline_is_deterministic() -> None:
    documents = [
        document("doc-a", [diagnosis("Asthma"), diagnosis("Gout")]),
        document("doc-b", [medication(), diagnosis("Hypertension", "2020")]),
    ]
    first = build_timeline(aggregate_entities(intake_entities("p1", documents)))
    second = build_timeline(aggregate_entities(list(reversed(intake_entities("p1", documents)))))

    assert first.model_dump_json() == second.model_dump_json()


def test_same_day_same_document_orders_by_semantic_key() -> None:
    documents = [
        document(
            "doc-a",
            [
                diagnosis("Zoster", "2022-03-01"),
                diagnosis("Migraine", "2022-03-01"),
                diagnosis("Anemia", "2022-03-01"),
            ],
        )
    ]
    grouped = aggregate_entities(intake_entities("p1", documents))
    timeline = build_timeline(grouped)

    assert [event.semantic_key for event in timeline.events] == ["anemia", "migraine", "zoster"]
