"""QuizArena: FastAPI backend.

Hosts timed multiplayer quizzes and fact-check games generated from a
prompt, PDF, web page or video transcript. Provides REST endpoints for
session creation, joining, answering, completion, reward settlement
and live leaderboards.
"""
