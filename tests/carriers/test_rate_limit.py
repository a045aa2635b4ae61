from parceltrack.carriers.rate_limit import TTLStore, default_store, try_acquire

class Clock:
    def __init__(self):
        self.t = 1000.0

    def __call__(self):
        return self.t

def test_one_fetch_per_window():
    clock = Clock()
    store = TTLStore(clock=clock)
    assert try_acquire(store, "LP00123456789012", 300)
    assert not try_acquire(store, "LP00123456789012", 300)
    # other numbers are independent
    assert try_acquire(store, "1Z999AA10123456784", 300)

def test_window_expires():
    clock = Clock()
    store = TTLStore(clock=clock)
    assert try_acquire(store, "A", 300)
    clock.t += 299
    assert not try_acquire(store, "A", 300)
    clock.t += 1
    assert try_acquire(store, "A", 300)

def test_get_and_clear():
    clock = Clock()
    store = TTLStore(clock=clock)
    assert store.get("A") is None
    store.add("A", 42.0, 10)
    assert store.get("A") == 42.0
    store.clear()
    assert store.get("A") is None

def test_default_store_is_shared():
    assert default_store() is default_store()
