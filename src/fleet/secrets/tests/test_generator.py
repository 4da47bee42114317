import datetime
import threading

import pytest

from fleet import GenerationFailure
from fleet.environment import SecretDefinition

from ..generator import (
    EXPIRED,
    GENERATION_DATA_CHANGED,
    GENERATOR_CHANGED,
    MISSING,
    OWNERS_ADDED,
    OWNERS_REMOVED,
    PARTS_CHANGED,
    RECIPIENTS_MISMATCH,
    GeneratedSecret,
    GeneratorEngine,
    generation_record,
    needs_regeneration,
    run_generator,
)
from ..store import SecretPart, StoredSecret

GENERATOR = "printf s3cret > $out/secret && echo SUCCESS > $out/marker"


def definition(**kw):
    options = dict(owners=["host-a"], generator=GENERATOR)
    options.update(kw)
    return SecretDefinition("db-password", **options)


def stored_for(definition, owners=None, expires_at=None):
    owners = definition.owners if owners is None else owners
    return StoredSecret(
        definition.key,
        owners,
        {name: SecretPart(name, True, recipients={
            owner: b"x" for owner in owners})
         for name in definition.private_parts},
        generation=generation_record(definition),
        expires_at=expires_at)


def test_needs_regeneration__1():
    """It generates secrets that were never generated."""
    assert [MISSING] == needs_regeneration(definition(), None)


def test_needs_regeneration__2():
    """It leaves up to date secrets alone."""
    d = definition()
    assert [] == needs_regeneration(d, stored_for(d))


def test_needs_regeneration__3():
    """It detects changed generator and seed data independently."""
    stored = stored_for(definition())
    changed = definition(
        generator="pwgen > $out/secret", generation_data={"length": 32})
    assert [GENERATOR_CHANGED, GENERATION_DATA_CHANGED] == needs_regeneration(
        changed, stored)


def test_needs_regeneration__4():
    """It does not regenerate for added owners unless asked to."""
    stored = stored_for(definition())
    assert [] == needs_regeneration(
        definition(owners=["host-a", "host-b"]), stored)


def test_needs_regeneration__5():
    """It regenerates for added owners if the definition says so."""
    d = definition(regenerate_on_owner_added=True)
    stored = stored_for(d)
    reasons = needs_regeneration(
        definition(owners=["host-a", "host-b"],
                   regenerate_on_owner_added=True),
        stored)
    assert OWNERS_ADDED in reasons


def test_needs_regeneration__6():
    """It always regenerates when owners were removed."""
    d = definition(owners=["host-a", "host-b"])
    stored = stored_for(d)
    assert [OWNERS_REMOVED] == needs_regeneration(definition(), stored)


def test_needs_regeneration__7():
    """It regenerates when the parts changed."""
    stored = stored_for(definition())
    assert [PARTS_CHANGED] == needs_regeneration(
        definition(private_parts=["key"], public_parts=["cert"]), stored)


def test_needs_regeneration__8():
    """It regenerates when recipients do not match the owners."""
    d = definition(owners=["host-a", "host-b"])
    stored = stored_for(d)
    stored.parts["secret"].recipients.pop("host-b")
    assert [RECIPIENTS_MISMATCH] == needs_regeneration(d, stored)


def test_needs_regeneration__9():
    """It regenerates expired secrets."""
    d = definition()
    stored = stored_for(d, expires_at="2026-01-01T00:00:00+00:00")
    before = datetime.datetime(2025, 12, 31, tzinfo=datetime.timezone.utc)
    after = datetime.datetime(2026, 1, 2, tzinfo=datetime.timezone.utc)
    assert [] == needs_regeneration(d, stored, before)
    assert [EXPIRED] == needs_regeneration(d, stored, after)


def test_generation_record_ignores_owners_by_default():
    one = generation_record(definition())
    two = generation_record(definition(owners=["host-a", "host-b"]))
    assert one == two
    three = generation_record(definition(regenerate_on_owner_added=True))
    assert one.hash != three.hash
    assert ["host-a"] == three.inputs["owners"]


def test_run_generator__1(tmpdir):
    """It collects the parts a generator writes."""
    result = run_generator(definition(), str(tmpdir))
    assert {"secret": b"s3cret"} == result.parts
    assert result.created_at
    assert result.expires_at is None


def test_run_generator__2(tmpdir):
    """It passes the secret's context in the environment."""
    d = SecretDefinition(
        "ssh-key", ["host-a"], host="host-a",
        generation_data={"bits": 4096},
        private_parts=["key"], public_parts=["pub"],
        generator=(
            "printf %s $FLEET_HOST:$FLEET_SECRET > $out/key && "
            "printf %s \"$FLEET_GENERATION_DATA\" > $out/pub && "
            "echo 2027-01-01T00:00:00Z > $out/expires_at && "
            "echo SUCCESS > $out/marker"))
    result = run_generator(d, str(tmpdir))
    assert b"host-a:ssh-key" == result.parts["key"]
    assert b'{"bits": 4096}' == result.parts["pub"]
    assert "2027-01-01T00:00:00+00:00" == result.expires_at


def test_run_generator__3(tmpdir):
    """It fails without success marker."""
    with pytest.raises(GenerationFailure) as e:
        run_generator(definition(generator="printf x > $out/secret"),
                      str(tmpdir))
    assert "generator did not write the SUCCESS marker" == e.value.reason


def test_run_generator__4(tmpdir):
    """It fails on non-zero exit codes and keeps stderr."""
    with pytest.raises(GenerationFailure) as e:
        run_generator(definition(generator="echo no entropy >&2; exit 5"),
                      str(tmpdir))
    assert "generator exited with code 5" == e.value.reason
    assert "no entropy" == e.value.details


def test_run_generator__5(tmpdir):
    """It fails if parts are missing or unexpected."""
    with pytest.raises(GenerationFailure) as e:
        run_generator(definition(generator=(
            "echo x > $out/key && echo SUCCESS > $out/marker")),
            str(tmpdir))
    assert ("generator produced parts [key], expected [secret]"
            == e.value.reason)


def test_run_generator__6(tmpdir):
    """It fails on unparseable timestamps."""
    with pytest.raises(GenerationFailure) as e:
        run_generator(definition(generator=(
            GENERATOR + " && echo tomorrow > $out/expires_at")), str(tmpdir))
    assert e.value.reason.startswith("invalid timestamp")


def test_engine_coalesces_concurrent_requests(tmpdir):
    started = threading.Event()
    release = threading.Event()
    calls = []

    def runner(definition, project_dir):
        calls.append(definition.key)
        started.set()
        release.wait(5)
        return GeneratedSecret({"secret": b"x"}, "2026-01-01T00:00:00+00:00")

    engine = GeneratorEngine(str(tmpdir), jobs=2, runner=runner)
    try:
        first = engine.request(definition())
        started.wait(5)
        second = engine.request(definition())
        assert first is second
        release.set()
        assert first.result() is second.result()
        assert ["shared/db-password"] == calls
        # Once finished, a new request runs the generator again.
        engine.generate(definition())
        assert 2 == len(calls)
    finally:
        release.set()
        engine.shutdown()


def test_engine_propagates_failures(tmpdir):

    def runner(definition, project_dir):
        raise GenerationFailure.from_context(definition.label, "broken")

    engine = GeneratorEngine(str(tmpdir), runner=runner)
    try:
        with pytest.raises(GenerationFailure):
            engine.generate(definition())
    finally:
        engine.shutdown()
