"""
Agent prompt construction.

- fix prompts: classified build error + repository + optional rule instructions
- review prompts: pull request metadata and the user's review rules for the review agent
"""
