import unittest

from src.common.conflicts import ConflictHandlingReconciler, ReconcileResult, is_conflict_only
from src.common.errors import (
    AggregateError,
    AlreadyExistsError,
    ConflictError,
    GoneError,
    NotFoundError,
    ReconcileError,
    ignore_not_found,
    is_conflict,
    is_not_found,
)


def _wrapped(cause: Exception, message: str = "wrapped") -> ReconcileError:
    try:
        raise ReconcileError(message) from cause
    except ReconcileError as exc:
        return exc


class ErrorClassificationTests(unittest.TestCase):
    def test_causes_are_followed(self) -> None:
        err = _wrapped(_wrapped(NotFoundError("gone")))
        self.assertTrue(is_not_found(err))
        self.assertFalse(is_conflict(err))
        self.assertIsNone(ignore_not_found(err))

    def test_implicit_context_is_not_followed(self) -> None:
        try:
            try:
                raise ConflictError("stale")
            except ConflictError:
                raise ReconcileError("while handling")
        except ReconcileError as exc:
            err = exc
        self.assertIsNotNone(err.__context__)
        self.assertFalse(is_conflict(err))

    def test_already_exists_is_not_a_conflict(self) -> None:
        self.assertFalse(is_conflict(AlreadyExistsError("taken")))
        self.assertFalse(is_conflict_only(AlreadyExistsError("taken")))

    def test_gone_counts_as_not_found(self) -> None:
        self.assertTrue(is_not_found(GoneError("expired")))

    def test_aggregate_from_list(self) -> None:
        single = ReconcileError("one")
        self.assertIsNone(AggregateError.from_list([]))
        self.assertIs(AggregateError.from_list([single]), single)
        aggregate = AggregateError.from_list([single, ReconcileError("two")])
        self.assertIsInstance(aggregate, AggregateError)
        self.assertEqual(str(aggregate), "[one, two]")

    def test_flatten_nested_aggregates(self) -> None:
        inner = AggregateError([ReconcileError("a"), ReconcileError("b")])
        outer = AggregateError([inner, ReconcileError("c")])
        self.assertEqual([str(err) for err in outer.flatten()], ["a", "b", "c"])


class ConflictOnlyTests(unittest.TestCase):
    def test_plain_and_wrapped_conflicts(self) -> None:
        self.assertTrue(is_conflict_only(ConflictError("stale")))
        self.assertTrue(is_conflict_only(_wrapped(ConflictError("stale"))))
        self.assertFalse(is_conflict_only(None))
        self.assertFalse(is_conflict_only(ReconcileError("other")))

    def test_aggregate_of_conflicts_only(self) -> None:
        err = AggregateError([ConflictError("a"), _wrapped(ConflictError("b"))])
        self.assertTrue(is_conflict_only(err))
        self.assertTrue(is_conflict_only(AggregateError([err, ConflictError("c")])))

    def test_mixed_aggregate_is_not_conflict_only(self) -> None:
        err = AggregateError([ConflictError("a"), ReconcileError("b")])
        self.assertFalse(is_conflict_only(err))
        self.assertFalse(is_conflict_only(_wrapped(err)))


class ConflictHandlingReconcilerTests(unittest.TestCase):
    def test_success_passes_through(self) -> None:
        result = ReconcileResult(requeue=True, requeue_after=1.0)
        handler = ConflictHandlingReconciler(lambda request: result)
        self.assertIs(handler.reconcile("ns/name"), result)

    def test_conflict_becomes_requeue(self) -> None:
        def reconcile(request):
            raise AggregateError([ConflictError("a"), ConflictError("b")])

        result = ConflictHandlingReconciler(reconcile, requeue_after=7.0).reconcile("ns/name")
        self.assertEqual(result, ReconcileResult(requeue=True, requeue_after=7.0))

    def test_other_errors_propagate(self) -> None:
        def reconcile(request):
            raise AggregateError([ConflictError("a"), ReconcileError("b")])

        with self.assertRaises(AggregateError):
            ConflictHandlingReconciler(reconcile).reconcile("ns/name")

    def test_non_reconcile_errors_propagate(self) -> None:
        def reconcile(request):
            raise KeyError("bug")

        with self.assertRaises(KeyError):
            ConflictHandlingReconciler(reconcile).reconcile("ns/name")


if __name__ == "__main__":
    unittest.main()
