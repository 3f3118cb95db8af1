import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from chatdj.access import AccessPolicy
from chatdj.commands import AddToQueue, SetVolume, SkipNext
from chatdj.config import parse_allowed_users


class AccessPolicyTests(unittest.TestCase):
    def test_allow_list_is_case_insensitive(self) -> None:
        policy = AccessPolicy(
            bot_username='djbot',
            skip_allowed_users=parse_allowed_users('Alice,Bob'),
        )
        rejected = policy.allow_list_gate(SkipNext(), 'carol')
        self.assertFalse(rejected.allowed)
        self.assertEqual(rejected.allow_list, ['alice', 'bob'])
        self.assertTrue(policy.allow_list_gate(SkipNext(), 'ALICE').allowed)

    def test_empty_allow_list_allows_everyone(self) -> None:
        policy = AccessPolicy(bot_username='djbot', set_volume_allowed_users=parse_allowed_users(''))
        decision = policy.allow_list_gate(SetVolume(10), 'anyone')
        self.assertTrue(decision.allowed)
        self.assertEqual(decision.allow_list, [])

    def test_unprivileged_commands_skip_allow_list(self) -> None:
        policy = AccessPolicy(bot_username='djbot', skip_allowed_users=['alice'])
        self.assertTrue(policy.allow_list_gate(AddToQueue(query='song'), 'carol').allowed)

    def test_lists_are_per_command(self) -> None:
        policy = AccessPolicy(
            bot_username='djbot',
            skip_allowed_users=['alice'],
            set_volume_allowed_users=['bob'],
        )
        self.assertFalse(policy.allow_list_gate(SetVolume(5), 'alice').allowed)
        self.assertTrue(policy.allow_list_gate(SetVolume(5), 'Bob').allowed)

    def test_subscriber_gate(self) -> None:
        open_policy = AccessPolicy(bot_username='djbot')
        self.assertTrue(open_policy.subscriber_gate(False))
        subs_policy = AccessPolicy(bot_username='djbot', subscribers_only=True)
        self.assertFalse(subs_policy.subscriber_gate(False))
        self.assertTrue(subs_policy.subscriber_gate(True))

    def test_is_self(self) -> None:
        policy = AccessPolicy(bot_username='DJBot')
        self.assertTrue(policy.is_self('djbot'))
        self.assertTrue(policy.is_self('someone', is_self=True))
        self.assertFalse(policy.is_self('someone'))

    def test_parse_allowed_users_trims_entries(self) -> None:
        self.assertEqual(parse_allowed_users(' Alice , ,BOB,'), ['alice', 'bob'])
        self.assertEqual(parse_allowed_users(None), [])


if __name__ == "__main__":
    unittest.main()
