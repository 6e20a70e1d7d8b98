"""
Exam Synthesis Pipeline
generation/

Parts:
1. Completion Client   — OpenAI calls over a rotating credential pool
2. Retrieval Engine    — nearest reference chunk per topic phrase (SQL or Qdrant)
3. Concept Extractor   — Agent 1: testable concepts + verbatim excerpts
4. Question Crafter    — Agent 2: one question per concept, waves of 3
5. Reviewer            — Agent 3: score, feedback, difficulty revision
6. Synthesis Pipeline  — Extract → Craft → Review orchestration
7. Exam Assembler      — blueprint → bank sampling / synthesis → draft exam
"""
