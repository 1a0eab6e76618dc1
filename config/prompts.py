# Toolsmith/config/prompts.py

# --- 1. Input Collection Questions ---
# Asked only for fields that are still missing; an empty answer declines the field.
FIELD_QUESTIONS = {
    "project_ref": "Supabase project reference (the <ref> in https://<ref>.supabase.co):",
    "owner_email": "CONFIG_EMAIL, the email that will own the tool configuration and appear in RLS policies:",
    "categories": "Which tool categories should be generated? (comma separated: select, insert, update, delete, rpc)",
    "project_url": "Supabase project URL (optional, used in the MCP config):",
    "project_label": "Human label for the project (optional):",
    "anon_key": "Supabase anon key (optional; leave empty to keep a placeholder in the MCP config):",
}

# --- 2. Confirmation Questions ---
# Asked once the tools JSON has been shown to the operator.
CONFIRMATION_QUESTIONS = {
    "action": "Are you satisfied with the tools JSON? (accept / regenerate / abort)",
    "categories": "New categories for regeneration (comma separated), or empty to keep the current ones:",
    "provision": "Create the admin table tool_configurations and its RLS policies? (yes/no)",
    "execute": "Execute the SQL on the database now, or only return it? (yes = execute / no = return SQL)",
    "store_tools": "Store this tools JSON as a new active configuration version? (yes/no)",
}

# --- 3. Output Notes ---
MCP_CONFIG_NOTE = (
    "Replace <PROJECT_URL>, <ANON_KEY_OR_placeholder>, <USER_EMAIL_placeholder> and "
    "<USER_PASSWORD_placeholder> before sharing. The server fetches tools at runtime from tool_configurations."
)
