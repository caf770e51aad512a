import unittest

from examtutor.context_cache import ContextBundle
from examtutor.continuity import KIND_AMBIGUOUS_FIRST, KIND_FOLLOWUP, KIND_NEW
from examtutor.request_composer import FullDocument, compose


class TestRequestComposer(unittest.TestCase):
    def setUp(self):
        self.bundle = ContextBundle(images=("img-a", "img-b"), marking_scheme_text="M1 A1", question_text="Solve x")
        self.document = FullDocument(exam_images=("p1", "p2", "p3"), marking_scheme_images=("s1",))

    def test_optimized_payload_wire_fields(self):
        payload = compose(
            "3",
            KIND_NEW,
            self.bundle,
            None,
            question="Question 3 please",
            paper_id="paper-1",
            user_id="user-1",
            conversation_id="conv-1",
            last_question_number="2",
            provider="gemini",
        )
        wire = payload.to_wire()
        self.assertEqual(
            set(wire),
            {
                "question",
                "provider",
                "examPaperId",
                "conversationId",
                "userId",
                "lastQuestionNumber",
                "optimizedMode",
                "questionNumber",
                "examPaperImages",
                "markingSchemeText",
                "questionText",
            },
        )
        self.assertTrue(wire["optimizedMode"])
        self.assertEqual(wire["questionNumber"], "3")
        self.assertEqual(wire["examPaperImages"], ["img-a", "img-b"])
        self.assertEqual(wire["markingSchemeText"], "M1 A1")
        self.assertEqual(wire["questionText"], "Solve x")
        self.assertEqual(wire["lastQuestionNumber"], "2")
        self.assertEqual(payload.image_count, 2)

    def test_followup_reuses_bundle(self):
        wire = compose("3", KIND_FOLLOWUP, self.bundle, None, question="why?", paper_id="paper-1").to_wire()
        self.assertTrue(wire["optimizedMode"])
        self.assertEqual(wire["questionNumber"], "3")
        self.assertEqual(len(wire["examPaperImages"]), 2)

    def test_fallback_sends_full_document(self):
        payload = compose("7", KIND_NEW, None, self.document, question="Question 7", paper_id="paper-1")
        wire = payload.to_wire()
        self.assertFalse(wire["optimizedMode"])
        self.assertNotIn("questionNumber", wire)
        self.assertNotIn("markingSchemeText", wire)
        self.assertEqual(wire["examPaperImages"], ["p1", "p2", "p3"])
        self.assertEqual(wire["markingSchemeImages"], ["s1"])
        self.assertEqual(payload.image_count, 4)

    def test_identity_fields_sent_as_null(self):
        wire = compose("1", KIND_NEW, self.bundle, None, question="q1", paper_id="paper-1").to_wire()
        self.assertIsNone(wire["conversationId"])
        self.assertIsNone(wire["userId"])
        self.assertIsNone(wire["lastQuestionNumber"])
        self.assertEqual(wire["examPaperId"], "paper-1")

    def test_ambiguous_messages_are_not_composed(self):
        with self.assertRaises(ValueError):
            compose(None, KIND_AMBIGUOUS_FIRST, None, self.document, question="hi", paper_id="paper-1")

    def test_empty_full_document(self):
        self.assertTrue(FullDocument().is_empty)
        self.assertTrue(FullDocument(marking_scheme_images=("s1",)).is_empty)
        self.assertFalse(self.document.is_empty)


if __name__ == "__main__":
    unittest.main()
