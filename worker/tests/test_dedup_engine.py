import pytest

from boothworker.core.config import Settings
from boothworker.dedup.engine import DeduplicationEngine, find_duplicate_groups
from boothworker.dedup.merge import merge_descriptions, merge_records, plan_merge, union_ordered
from boothworker.dedup.similarity import HeuristicNameSimilarity
from boothworker.models import CanonicalEntity, DuplicateGroup, EntityStatus
from boothworker.store.memory import InMemoryEntityStore


def _entity(entity_id, name, lat=None, lon=None, **extra):
    values = {
        "id": entity_id,
        "slug": f"{name.lower().replace(' ', '-')}-berlin",
        "name": name,
        "city": "Berlin",
        "country": "Germany",
        "latitude": lat,
        "longitude": lon,
    }
    values.update(extra)
    return CanonicalEntity(**values)


def _seed(store, *entities):
    stored = []
    with store.session() as session:
        for entity in entities:
            stored.append(session.insert(entity))
    return stored


@pytest.fixture
def store():
    return InMemoryEntityStore()


@pytest.fixture
def engine(store):
    return DeduplicationEngine(Settings(), store)


def test_nearby_similar_names_merge_into_best_scored(engine, store):
    sparse, rich = _seed(
        store,
        _entity(None, "Mauerpark 2", 52.5441, 13.4025, slug="mauerpark-berlin-2", source_names=["lomography"]),
        _entity(
            None,
            "Mauerpark Booth",
            52.5441,
            13.4022,
            slug="mauerpark-booth-berlin",
            description="Four-frame black and white strip at the flea market entrance.",
            photo_exterior_url="https://img.example.com/mauerpark.jpg",
            source_names=["photobooth.net"],
        ),
    )

    report = engine.run()

    assert report.merged == 1
    assert report.deleted == 1
    assert report.before == 2
    assert report.after == 1
    assert store.get(sparse.id) is None
    kept = store.get(rich.id)
    assert kept.name == "Mauerpark Booth"
    assert kept.source_names == ["photobooth.net", "lomography"]
    assert kept.version == rich.version + 1


def test_adjacent_booths_with_different_names_stay_apart(engine, store):
    _seed(
        store,
        _entity(None, "Mauerpark Booth", 52.5441, 13.4022),
        _entity(None, "Berghain Booth", 52.5441, 13.4023),
    )
    report = engine.run()
    assert report.groups == 0
    assert store.count() == 2


def test_same_name_beyond_radius_stays_apart(engine, store):
    _seed(
        store,
        _entity(None, "Photoautomat", 52.5441, 13.4022, slug="photoautomat-berlin"),
        _entity(None, "Photoautomat", 52.5300, 13.4022, slug="photoautomat-berlin-2"),
    )
    assert engine.run().merged == 0
    assert store.count() == 2


def test_final_pass_uses_the_tighter_radius(engine, store):
    _seed(
        store,
        _entity(None, "Mauerpark Booth", 52.5441, 13.4022),
        _entity(None, "Mauerpark 2", 52.5441, 13.4025),
    )
    assert engine.run(final=True).merged == 0
    assert engine.run(radius_m=50.0).merged == 1


def test_records_without_coordinates_group_by_address(engine, store):
    _seed(
        store,
        _entity(None, "Photoautomat Kreuzberg", address="Oranienstr. 25", slug="a"),
        _entity(None, "Photoautomat Kreuzberg", address="oranienstr 25", slug="b"),
        _entity(None, "Photoautomat Kreuzberg", address="Wiener Str. 1", slug="c"),
    )
    report = engine.run()
    assert report.merged == 1
    assert store.count() == 2


def test_city_filter_limits_the_run(engine, store):
    _seed(
        store,
        _entity(None, "Mauerpark Booth", 52.5441, 13.4022),
        _entity(None, "Mauerpark 2", 52.5441, 13.4025),
    )
    assert engine.run(city="Hamburg").before == 2
    assert store.count() == 2


def test_stale_plan_is_skipped(engine, store):
    _, second = _seed(
        store,
        _entity(None, "Mauerpark Booth", 52.5441, 13.4022),
        _entity(None, "Mauerpark 2", 52.5441, 13.4025),
    )
    groups, _ = find_duplicate_groups(store.list_entities(), 50.0, engine.similarity)
    decision = plan_merge(groups[0], engine.quality)

    with store.session() as session:
        changed = store.get(second.id)
        changed.hours = "daily"
        session.update(changed, expected_version=changed.version)

    assert engine.commit(decision) is False
    assert store.count() == 2
    assert store.get(second.id).hours == "daily"


def test_record_claimed_by_two_groups_goes_to_the_nearer_one():
    similarity = HeuristicNameSimilarity()
    west = _entity(1, "Photoautomat Mitte", 52.5300, 13.4000)
    east = _entity(2, "Photoautomat Mitte", 52.5300, 13.4009)
    between = _entity(3, "Photoautomat Mitte 2", 52.5300, 13.4003)

    groups, conflicts = find_duplicate_groups([between, east, west], 50.0, similarity)

    assert len(groups) == 1
    assert [member.id for member in groups[0].members] == [1, 3]
    assert len(conflicts) == 1
    assert conflicts[0].entity_id == 3
    assert conflicts[0].claimed_by == [1, 2]
    assert conflicts[0].assigned_to == 1


def test_merge_keeps_keeper_values_and_fills_gaps():
    keeper = _entity(
        1,
        "Mauerpark Booth",
        52.5441,
        13.4022,
        hours="Sun 10-18",
        description="Strip booth at the flea market.",
        photos=["a.jpg"],
        source_names=["photobooth.net"],
    )
    loser = _entity(
        2,
        "Mauerpark 2",
        hours="daily",
        phone="+49 30 1234567",
        description="Cash only.",
        photos=["a.jpg", "b.jpg"],
        source_names=["lomography"],
        status=EntityStatus.ACTIVE,
    )

    merged = merge_records([keeper, loser])

    assert merged.name == "Mauerpark Booth"
    assert merged.hours == "Sun 10-18"
    assert merged.phone == "+49 30 1234567"
    assert merged.description == "Strip booth at the flea market.\n\nCash only."
    assert merged.photos == ["a.jpg", "b.jpg"]
    assert merged.source_names == ["photobooth.net", "lomography"]
    assert merged.status is EntityStatus.ACTIVE
    assert keeper.phone is None


def test_merge_copies_coordinates_as_a_pair():
    keeper = _entity(1, "Mauerpark", latitude=0.0, longitude=0.0)
    loser = _entity(2, "Mauerpark 2", 52.5441, 13.4025)
    merged = merge_records([keeper, loser])
    assert (merged.latitude, merged.longitude) == (52.5441, 13.4025)


def test_plan_merge_reports_counts():
    decision = plan_merge(
        DuplicateGroup(members=[_entity(5, "Mauerpark", 52.5441, 13.4022), _entity(9, "Mauerpark 2", 52.5441, 13.4025)])
    )
    assert decision.keeper.id == 5
    assert decision.loser_ids == [9]
    assert (decision.before_count, decision.after_count) == (2, 1)


def test_merge_helpers():
    assert union_ordered(["a", "b"], None, ["b", "c", ""]) == ["a", "b", "c"]
    assert merge_descriptions([None, " first ", "first", "second"]) == "first\n\nsecond"
    assert merge_descriptions([None, ""]) is None
    with pytest.raises(ValueError):
        merge_records([])


def test_chain_of_neighbours_does_not_group_records_beyond_radius():
    similarity = HeuristicNameSimilarity()
    chain = [_entity(index + 1, "Photoautomat", 52.5300, 13.4000 + index * 0.0006) for index in range(4)]

    groups, _ = find_duplicate_groups(chain, 50.0, similarity)

    assert [[member.id for member in group.members] for group in groups] == [[1, 2], [3, 4]]


def test_chained_booths_along_a_street_keep_their_ends(engine, store):
    _seed(
        store,
        *[
            _entity(None, "Photoautomat", 52.5300, 13.4000 + index * 0.0006, slug=slug)
            for index, slug in enumerate("abcd")
        ],
    )

    report = engine.run()

    assert report.after == 2
    assert [entity.slug for entity in store.list_entities()] == ["a", "c"]
