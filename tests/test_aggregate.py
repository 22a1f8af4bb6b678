from packages.core.schemas.chart import EntityCategory
from packages.pipeline.steps.aggregate import aggregate_entities
from packages.pipeline.steps.confidence import combined_confidence, normalize_confidence
from tests.builders import diagnosis, document, intake_entities, medication, ts


def test_same_fact_from_two_documents_coalesces_with_max_confidence() -> None:
    entities = intake_entities(
        "p1",
        [
            document("doc-a", [medication(confidence=0.6)], extraction_timestamp=ts(9)),
            document("doc-b", [medication(confidence=0.9)], extraction_timestamp=ts(10)),
        ],
    )
    grouped = aggregate_entities(entities)

    meds = grouped[EntityCategory.MEDICATION]
    assert len(meds) == 1
    assert meds[0].confidence == 0.9
    assert meds[0].document_ids == ["doc-a", "doc-b"]
    assert [item.confidence for item in meds[0].attestations] == [0.6, 0.9]


def test_comparison_ignores_case_and_whitespace() -> None:
    entities = intake_entities(
        "p1",
        [
            document("doc-a", [medication(name="Metformin", dosage="500mg")]),
            document("doc-b", [medication(name="  metformin ", dosage="500MG")]),
        ],
    )
    grouped = aggregate_entities(entities)

    assert len(grouped[EntityCategory.MEDICATION]) == 1


def test_divergent_values_are_kept_side_by_side() -> None:
    entities = intake_entities(
        "p1",
        [
            document("doc-a", [medication(dosage="500mg")]),
            document("doc-b", [medication(dosage="850mg")]),
        ],
    )
    meds = aggregate_entities(entities)[EntityCategory.MEDICATION]

    assert len(meds) == 2
    assert {item.payload.dosage for item in meds} == {"500mg", "850mg"}
    assert len({item.semantic_key for item in meds}) == 1
    assert len({item.id for item in meds}) == 2


def test_entity_counts_are_conserved() -> None:
    entities = intake_entities(
        "p1",
        [
            document("doc-a", [medication(), diagnosis("Hypertension"), diagnosis("Asthma")]),
            document("doc-b", [medication(), diagnosis("Hypertension")]),
        ],
    )
    grouped = aggregate_entities(entities)

    attestations = sum(
        len(item.attestations) for items in grouped.values() for item in items
    )
    assert attestations == len(entities)
    assert set(grouped) == set(EntityCategory)


def test_aggregation_is_order_independent() -> None:
    documents = [
        document("doc-a", [medication(), diagnosis("Hypertension")], extraction_timestamp=ts(9)),
        document("doc-b", [medication(dosage="850mg")], extraction_timestamp=ts(10)),
    ]
    forward = aggregate_entities(intake_entities("p1", documents))
    backward = aggregate_entities(list(reversed(intake_entities("p1", documents))))

    assert forward == backward


def test_dates_outside_window_are_separate_facts() -> None:
    entities = intake_entities(
        "p1",
        [
            document("doc-a", [medication(start_date="2024-01-10")]),
            document("doc-b", [medication(start_date="2024-06-10")]),
        ],
    )
    meds = aggregate_entities(entities)[EntityCategory.MEDICATION]

    assert len({item.semantic_key for item in meds}) == 2


def test_confidence_helpers() -> None:
    assert normalize_confidence(0.75) == 0.75
    assert normalize_confidence("0.5") == 0.5
    assert normalize_confidence(2) == 0.0
    assert combined_confidence([]) == 0.0
