from rda.urls import AzureDevOpsUrlBuilder, classify_external_url, extract_and_classify_urls


def test_classify_external_url_by_host_and_path() -> None:
    assert classify_external_url("https://dev.azure.com/acme/Atlas/_workitems/edit/42") == "azure_devops_workitem"
    assert classify_external_url("https://dev.azure.com/acme/Atlas/_wiki/wikis/Atlas.wiki/1") == "azure_devops_wiki"
    assert classify_external_url("https://acme.visualstudio.com/Atlas/_sprints/taskboard/T") == "azure_devops_sprint"
    assert classify_external_url("https://dev.azure.com/acme/Atlas/_deliveryplans") == "azure_devops_deliveryplan"
    assert classify_external_url("https://www.figma.com/file/abc") == "figma"
    assert classify_external_url("https://acme.sharepoint.com/sites/x") == "sharepoint"
    assert classify_external_url("https://tasks.office.com/acme/plan") == "planner"
    assert classify_external_url("\\\\fileserver\\share\\rda.docx") == "network_path"
    assert classify_external_url("C:\\docs\\rda.docx") == "network_path"
    assert classify_external_url("https://dev.azure.com/acme/Atlas") == "other"
    assert classify_external_url("   ") == "other"


def test_extract_and_classify_urls_deduplicates_in_order() -> None:
    text = (
        "Ver https://www.figma.com/file/abc e (https://dev.azure.com/acme/Atlas/_workitems/edit/7) "
        "e de novo https://www.figma.com/file/abc"
    )
    found = extract_and_classify_urls(text)

    assert [item.to_dict() for item in found] == [
        {"url": "https://www.figma.com/file/abc", "type": "figma"},
        {"url": "https://dev.azure.com/acme/Atlas/_workitems/edit/7", "type": "azure_devops_workitem"},
    ]
    assert extract_and_classify_urls("") == []


def test_azure_devops_url_builder_escapes_segments() -> None:
    builder = AzureDevOpsUrlBuilder(organization="https://dev.azure.com/acme/", project="Projeto Atlas", team_name="Time A")

    assert builder.work_item(12) == "https://dev.azure.com/acme/Projeto%20Atlas/_workitems/edit/12"
    assert (
        builder.sprint_taskboard("Sprint 5")
        == "https://dev.azure.com/acme/Projeto%20Atlas/Time%20A/_sprints/taskboard/Sprint%205"
    )
    assert builder.wiki_page("Atlas.wiki", "Home") == "https://dev.azure.com/acme/Projeto%20Atlas/_wiki/wikis/Atlas.wiki/page/Home"
    assert builder.delivery_plans() == "https://dev.azure.com/acme/Projeto%20Atlas/_deliveryplans"
    assert builder.delivery_plans("p 1") == "https://dev.azure.com/acme/Projeto%20Atlas/_deliveryplans?planId=p%201"


def test_sprint_taskboard_defaults_team_to_project() -> None:
    builder = AzureDevOpsUrlBuilder(organization="https://dev.azure.com/acme", project="Atlas")
    assert builder.sprint_taskboard("S1") == "https://dev.azure.com/acme/Atlas/Atlas/_sprints/taskboard/S1"
