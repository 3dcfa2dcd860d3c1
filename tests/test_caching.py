import threading
import time
import unittest

from engines.caching import KeyedLockRegistry


class KeyedLockRegistryTests(unittest.TestCase):
    def setUp(self):
        self.registry = KeyedLockRegistry()

    def test_same_key_is_serialised(self):
        active = []
        overlaps = []
        guard = threading.Lock()

        def writer():
            with self.registry.hold(("s1", "maths")):
                with guard:
                    active.append(1)
                    if len(active) > 1:
                        overlaps.append(True)
                time.sleep(0.01)
                with guard:
                    active.pop()

        threads = [threading.Thread(target=writer) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(overlaps, [])

    def test_different_keys_do_not_contend(self):
        acquired = threading.Event()

        def other():
            with self.registry.hold(("s2", "maths")):
                acquired.set()

        with self.registry.hold(("s1", "maths")):
            thread = threading.Thread(target=other)
            thread.start()
            self.assertTrue(acquired.wait(2))
            thread.join()

    def test_locks_are_released_when_unused(self):
        with self.registry.hold("s1"):
            self.assertEqual(len(self.registry), 1)
        self.assertEqual(len(self.registry), 0)


if __name__ == "__main__":
    unittest.main()
