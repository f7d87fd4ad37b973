"""
Tests for matching response fragments to outstanding evals.
"""

import unittest


def eval_request(request_id, code="(+ 1 2)"):
    from replbridge.messages import Request, RequestKind

    return Request(id=request_id, kind=RequestKind.EVAL, code=code)


def fragment(kind_name, payload="", request_id=None, session=None, **fields):
    from replbridge.messages import FragmentKind, ResponseFragment

    return ResponseFragment(
        FragmentKind[kind_name],
        payload,
        request_id=request_id,
        session=session,
        **fields,
    )


class TestPendingEval(unittest.TestCase):
    """Test the per-eval accumulator."""

    def test_output_merged_in_arrival_order(self):
        """Test that adjacent output of one kind is merged."""
        from replbridge.correlator import PendingEval
        from replbridge.messages import FragmentKind

        pending = PendingEval(eval_request("1"))
        pending.add(fragment("STDOUT", "a"))
        pending.add(fragment("STDOUT", "b\n"))
        pending.add(fragment("STDERR", "oops\n"))
        pending.add(fragment("STDOUT", "c\n"))

        self.assertEqual(
            pending.chunks,
            [
                (FragmentKind.STDOUT, "ab\n"),
                (FragmentKind.STDERR, "oops\n"),
                (FragmentKind.STDOUT, "c\n"),
            ],
        )
        self.assertEqual(pending.output(FragmentKind.STDOUT), "ab\nc\n")

    def test_latest_value_wins(self):
        """Test that the most recent value is kept."""
        from replbridge.correlator import PendingEval

        pending = PendingEval(eval_request("1"))
        pending.add(fragment("VALUE", "1"))
        pending.add(fragment("VALUE", "2", ns="user"))
        self.assertFalse(pending.add(fragment("STATUS", "interrupted", status=["interrupted"])))
        self.assertTrue(pending.add(fragment("DONE")))
        self.assertEqual(pending.value, "2")
        self.assertEqual(pending.ns, "user")
        self.assertEqual(pending.status, ["interrupted"])

    def test_summary(self):
        """Test the evaluated notification params."""
        from replbridge.correlator import PendingEval

        ok = PendingEval(eval_request("1"))
        ok.add(fragment("VALUE", "3"))
        self.assertEqual(ok.summary(), {"id": "1", "value": "3"})

        failed = PendingEval(eval_request("2"))
        failed.add(fragment("VALUE", "nil"))
        failed.add(fragment("EXCEPTION", "java.lang.Exception: bad\n-- Trace --\nx"))
        self.assertEqual(failed.summary(), {"id": "2", "error": "java.lang.Exception: bad"})

        stderr_only = PendingEval(eval_request("3"))
        stderr_only.add(fragment("STDERR", "\nSyntax error reading source\n"))
        self.assertEqual(
            stderr_only.summary(), {"id": "3", "error": "Syntax error reading source"}
        )


class TestNreplCorrelator(unittest.TestCase):
    """Test correlation by request id."""

    def make(self):
        from replbridge.correlator import Correlator
        from replbridge.messages import ProtocolKind

        return Correlator(ProtocolKind.NREPL, "abc")

    def test_interleaved_evals(self):
        """Test that fragments of concurrent evals go to their own eval."""
        correlator = self.make()
        self.assertEqual(len(correlator.submit(eval_request("1"))), 1)
        self.assertEqual(len(correlator.submit(eval_request("2"))), 1)

        self.assertIsNone(correlator.feed(fragment("STDOUT", "one\n", "1", "abc")))
        self.assertIsNone(correlator.feed(fragment("VALUE", "2", "2", "abc")))
        self.assertIsNone(correlator.feed(fragment("VALUE", "1", "1", "abc")))

        done = correlator.feed(fragment("DONE", "", "2", "abc"))
        self.assertEqual(done.request.id, "2")
        self.assertEqual(done.value, "2")
        self.assertEqual(len(correlator), 1)

        done = correlator.feed(fragment("DONE", "", "1", "abc"))
        self.assertEqual(done.value, "1")
        self.assertEqual(done.chunks[0][1], "one\n")
        self.assertEqual(len(correlator), 0)

    def test_unknown_id_is_orphan(self):
        """Test that fragments for unknown ids raise OrphanFragment."""
        from replbridge.errors import OrphanFragment

        correlator = self.make()
        correlator.submit(eval_request("1"))
        with self.assertRaises(OrphanFragment):
            correlator.feed(fragment("DONE", "", "99", "abc"))
        self.assertEqual(len(correlator), 1)

    def test_foreign_session_is_orphan(self):
        """Test that a fragment from another session is not merged."""
        from replbridge.errors import OrphanFragment

        correlator = self.make()
        correlator.submit(eval_request("1"))
        with self.assertRaises(OrphanFragment):
            correlator.feed(fragment("VALUE", "3", "1", "other"))

    def test_duplicate_id_rejected(self):
        """Test that an outstanding request id cannot be submitted twice."""
        correlator = self.make()
        correlator.submit(eval_request("1"))
        with self.assertRaises(ValueError):
            correlator.submit(eval_request("1"))
        correlator.feed(fragment("DONE", "", "1", "abc"))
        self.assertEqual(len(correlator), 0)

    def test_oldest_and_discard(self):
        """Test interrupt target selection and discarding on loss."""
        correlator = self.make()
        self.assertIsNone(correlator.oldest())
        correlator.submit(eval_request("1"))
        correlator.submit(eval_request("2"))
        self.assertEqual(correlator.oldest().request.id, "1")
        self.assertIsNone(correlator.release())

        dropped = correlator.discard_all()
        self.assertEqual([p.request.id for p in dropped], ["1", "2"])
        self.assertEqual(len(correlator), 0)


class TestPreplCorrelator(unittest.TestCase):
    """Test single-flight correlation."""

    def make(self):
        from replbridge.correlator import Correlator
        from replbridge.messages import ProtocolKind

        return Correlator(ProtocolKind.PREPL)

    def test_single_flight(self):
        """Test that a second eval is queued until the first completes."""
        correlator = self.make()
        self.assertEqual([r.id for r in correlator.submit(eval_request("1"))], ["1"])
        self.assertEqual(correlator.submit(eval_request("2")), [])
        self.assertEqual(correlator.submit(eval_request("3")), [])
        self.assertIsNone(correlator.release())

        correlator.feed(fragment("VALUE", "a"))
        first = correlator.feed(fragment("DONE"))
        self.assertEqual(first.request.id, "1")

        following = correlator.release()
        self.assertEqual(following.id, "2")
        self.assertIsNone(correlator.release())

        correlator.feed(fragment("VALUE", "b"))
        second = correlator.feed(fragment("DONE"))
        self.assertEqual((second.request.id, second.value), ("2", "b"))
        self.assertEqual(correlator.release().id, "3")

    def test_output_with_nothing_in_flight(self):
        """Test that stray output is an orphan."""
        from replbridge.errors import OrphanFragment

        with self.assertRaises(OrphanFragment):
            self.make().feed(fragment("STDOUT", "tick\n"))

    def test_discard_includes_queued(self):
        """Test that queued evals are surfaced when the connection is lost."""
        correlator = self.make()
        correlator.submit(eval_request("1"))
        correlator.submit(eval_request("2"))
        dropped = correlator.discard_all()
        self.assertEqual([p.request.id for p in dropped], ["1", "2"])
        self.assertIsNone(correlator.oldest())


if __name__ == "__main__":
    unittest.main()
