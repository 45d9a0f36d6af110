from referrals import worker


def _stub(monkeypatch, calls, drips_raise=False):
    def openers():
        calls.append("openers")
        return {"ok": True, "sent": 0}

    def drips():
        calls.append("drips")
        if drips_raise:
            raise RuntimeError("airtable down")
        return {"ok": True, "sent": 0}

    monkeypatch.setattr(worker, "run_due_openers", openers)
    monkeypatch.setattr(worker, "run_drips", drips)


def test_first_cycle_runs_both(monkeypatch):
    calls = []
    _stub(monkeypatch, calls)
    results, last = worker.run_cycle(None, now=100.0)
    assert calls == ["openers", "drips"]
    assert last == 100.0
    assert set(results) == {"openers", "drips"}


def test_drips_wait_for_interval(monkeypatch):
    calls = []
    _stub(monkeypatch, calls)
    _, last = worker.run_cycle(100.0, now=160.0)
    assert calls == ["openers"]
    assert last == 100.0

    _, last = worker.run_cycle(100.0, now=100.0 + 4 * 60 * 60)
    assert calls[-1] == "drips"
    assert last == 100.0 + 4 * 60 * 60


def test_crash_in_one_sweep_is_contained(monkeypatch):
    calls = []
    _stub(monkeypatch, calls, drips_raise=True)
    results, _ = worker.run_cycle(None, now=0.0)
    assert results["openers"]["ok"] is True
    assert results["drips"] == {"ok": False, "error": "airtable down"}
