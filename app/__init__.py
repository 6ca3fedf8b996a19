"""Letter Workflow Orchestrator

This service turns CRM tasks into personally written, physically mailed letters:
- Selects eligible tasks from the CRM
- Gathers profile and dossier data for each contact
- Drafts a letter and sends it out for human approval
- Runs the revision loop until the letter is approved or rejected
- Submits approved letters to the mail carrier and updates the CRM
"""

__version__ = "1.0.0"
