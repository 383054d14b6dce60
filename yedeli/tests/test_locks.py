"""
键锁表测试
"""

import threading
import time

from yedeli.core.locks import KeyedLocks


class TestKeyedLocks:
    """键锁表"""

    def test_entry_removed_after_release(self):
        locks = KeyedLocks()
        with locks.hold("batch-1"):
            assert len(locks) == 1
            with locks.hold("batch-2"):
                assert len(locks) == 2
        assert len(locks) == 0

    def test_entry_removed_after_error(self):
        locks = KeyedLocks()
        try:
            with locks.hold("batch-1"):
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        assert len(locks) == 0

    def test_waiter_keeps_entry_alive(self):
        """有线程在等待时不能删除锁，否则后来者会拿到另一把锁"""
        locks = KeyedLocks()
        inside = threading.Event()
        release = threading.Event()
        overlap = []
        active = []

        def first():
            with locks.hold("k"):
                active.append(1)
                inside.set()
                release.wait(5)
                overlap.append(len(active))
                active.pop()

        def second():
            inside.wait(5)
            with locks.hold("k"):
                active.append(2)
                overlap.append(len(active))
                active.pop()

        t1 = threading.Thread(target=first)
        t2 = threading.Thread(target=second)
        t1.start()
        t2.start()
        inside.wait(5)
        # 等第二个线程排上队
        for _ in range(200):
            if len(locks) == 1 and locks._locks["k"].holders == 2:
                break
            time.sleep(0.005)
        release.set()
        t1.join()
        t2.join()

        assert overlap == [1, 1]
        assert len(locks) == 0

    def test_many_threads_many_keys(self):
        locks = KeyedLocks()
        counter = {"n": 0}

        def worker(i):
            for _ in range(50):
                with locks.hold(i % 4):
                    with locks.hold("shared"):
                        counter["n"] += 1

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert counter["n"] == 400
        assert len(locks) == 0
