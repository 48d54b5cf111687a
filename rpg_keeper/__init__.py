"""Narrative state & check resolution engine for an AI-narrated tabletop RPG.

Per turn:
  1. analysis   — the model classifies the player message into an InputAnalysis
                  (allowed?, intent, typed action list).
  2. actions    — each check/attack picks a DC by precedence and rolls a d100
                  against the character's value; model-suggested DCs persist.
  3. memory     — after the DM replies, completed rounds are compressed in
                  batches into round summaries plus a world-state delta.

See rpg_keeper.turn for the wiring and rpg_keeper.cli for the command line.
"""
