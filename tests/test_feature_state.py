import unittest
from types import SimpleNamespace

from src.rollout import FeatureState


class TestSerialization(unittest.TestCase):
    def test_deserialize_missing(self):
        for raw in [None, ""]:
            with self.subTest(raw):
                s = FeatureState.deserialize("chat", raw)
                self.assertEqual(s.name, "chat")
                self.assertEqual(s.percentage, 0)
                self.assertEqual(s.users, set())
                self.assertEqual(s.groups, set())
                self.assertEqual(s.ips, set())
                self.assertEqual(s, FeatureState("chat"))

    def test_deserialize(self):
        s = FeatureState.deserialize("chat", "20|1,2|admins,staff|1.2.3.4")
        self.assertEqual(s.percentage, 20)
        self.assertEqual(s.users, {"1", "2"})
        self.assertEqual(s.groups, {"admins", "staff"})
        self.assertEqual(s.ips, {"1.2.3.4"})

    def test_deserialize_partial(self):
        cases = [
            # raw, percentage, users, groups, ips
            ("100", 100, set(), set(), set()),
            ("10|5", 10, {"5"}, set(), set()),
            ("0||all", 0, set(), {"all"}, set()),
            ("abc|1,,2||", 0, {"1", "2"}, set(), set()),
            ("30xyz|||", 30, set(), set(), set()),
            ("1_0|||", 10, set(), set(), set()),
        ]
        for raw, percentage, users, groups, ips in cases:
            with self.subTest(raw):
                s = FeatureState.deserialize("f", raw)
                self.assertEqual((s.percentage, s.users, s.groups, s.ips), (percentage, users, groups, ips))

    def test_serialize(self):
        self.assertEqual(FeatureState("chat").serialize(), "0|||")
        s = FeatureState("chat", 20, users=["2", "1"], groups=["staff", "admins"], ips=["1.2.3.4"])
        self.assertEqual(s.serialize(), "20|1,2|admins,staff|1.2.3.4")

    def test_round_trip(self):
        states = [
            FeatureState("a"),
            FeatureState("b", 100),
            FeatureState("c", 35, users=[1, 2, 3]),
            FeatureState("d", 0, groups=["all", "beta"], ips=["10.0.0.1", "::1"]),
        ]
        for s in states:
            with self.subTest(s.name):
                self.assertEqual(FeatureState.deserialize(s.name, s.serialize()), s)


class TestMutators(unittest.TestCase):
    def test_users(self):
        s = FeatureState("chat")
        s.add_user(SimpleNamespace(id=42))
        s.add_user(42)
        s.add_user("42")
        self.assertEqual(s.users, {"42"})
        s.add_user(SimpleNamespace(id=7))
        s.remove_user(42)
        self.assertEqual(s.users, {"7"})
        s.remove_user(42)
        self.assertEqual(s.users, {"7"})

    def test_groups(self):
        s = FeatureState("chat")
        s.add_group("admins")
        s.add_group("admins")
        self.assertEqual(s.groups, {"admins"})
        s.remove_group("admins")
        s.remove_group("admins")
        self.assertEqual(s.groups, set())

    def test_ips(self):
        s = FeatureState("chat")
        s.add_ip("1.2.3.4")
        s.add_ip("1.2.3.4")
        s.add_ip("2001:db8::1")
        self.assertEqual(s.ips, {"1.2.3.4", "2001:db8::1"})
        s.remove_ip("2001:db8::1")
        s.remove_ip("2001:db8::1")
        self.assertEqual(s.ips, {"1.2.3.4"})

    def test_invalid_ips_ignored(self):
        s = FeatureState("chat")
        for ip in ["not-an-ip", "999.1.1.1", "1.2.3", "", None, 16909060]:
            with self.subTest(ip):
                s.add_ip(ip)
                self.assertEqual(s.ips, set())

    def test_percentage_not_clamped(self):
        s = FeatureState("chat")
        s.set_percentage(150)
        self.assertEqual(s.percentage, 150)
        s.set_percentage("20")
        self.assertEqual(s.percentage, 20)

    def test_clear(self):
        s = FeatureState("chat", 50, users=["1"], groups=["all"], ips=["1.2.3.4"])
        s.clear()
        self.assertEqual(s, FeatureState("chat"))

    def test_copy_and_to_dict(self):
        s = FeatureState("chat", 50, users=["2", "1"], groups=["all"])
        c = s.copy()
        c.add_user("3")
        c.set_percentage(10)
        self.assertEqual(
            s.to_dict(),
            {"percentage": 50, "groups": ["all"], "users": ["1", "2"], "ips": []},
        )
        self.assertEqual(
            c.to_dict(),
            {"percentage": 10, "groups": ["all"], "users": ["1", "2", "3"], "ips": []},
        )
        self.assertNotEqual(s, c)

    def test_equality_includes_name(self):
        self.assertNotEqual(FeatureState("a"), FeatureState("b"))
