"""
GraphQL Documents

Every document selects the ``rateLimit`` block so callers can track the
remaining budget even when a response also carries errors.
"""

RATE_LIMIT_FIELDS = """
    rateLimit {
      cost
      remaining
      resetAt
    }
"""

ACTOR_FIELDS = """
      __typename
      ... on User {
        id
        login
        name
        avatarUrl(size: 200)
        createdAt
        updatedAt
      }
      ... on Organization {
        id
        login
        name
        avatarUrl(size: 200)
        createdAt
        updatedAt
      }
      ... on Bot {
        id
        login
        avatarUrl(size: 200)
      }
      ... on Mannequin {
        id
        login
        avatarUrl(size: 200)
      }
"""

REACTION_FIELDS = """
      reactions(first: 25, orderBy: { field: CREATED_AT, direction: ASC }) {
        nodes {
          id
          content
          createdAt
          user {
            id
            login
            name
            avatarUrl(size: 200)
          }
        }
      }
"""

REPOSITORY_FIELDS = """
        id
        name
        nameWithOwner
        url
        isPrivate
        createdAt
        updatedAt
        owner {
          __ACTOR__
        }
"""

PAGE_INFO = """
        pageInfo {
          hasNextPage
          endCursor
        }
"""

COMMENT_FIELDS = """
          id
          author {
            __ACTOR__
          }
          createdAt
          updatedAt
          url
          body
          __REACTIONS__
"""


PROJECT_ITEM_VALUE_FIELDS = """
            __typename
            ... on ProjectV2ItemFieldSingleSelectValue {
              name
              updatedAt
            }
            ... on ProjectV2ItemFieldIterationValue {
              title
              updatedAt
            }
            ... on ProjectV2ItemFieldTextValue {
              text
              updatedAt
            }
            ... on ProjectV2ItemFieldNumberValue {
              number
              updatedAt
            }
"""

PROJECT_ITEM_FIELDS = """
        projectItems(first: 10) {
          nodes {
            id
            createdAt
            updatedAt
            project {
              title
            }
            status: fieldValueByName(name: "Status") {
              __PROJECT_ITEM_VALUE__
            }
          }
        }
"""


def _build(document: str) -> str:
    return (
        document.replace("__REPOSITORY__", REPOSITORY_FIELDS)
        .replace("__PROJECT_ITEMS__", PROJECT_ITEM_FIELDS)
        .replace("__PROJECT_ITEM_VALUE__", PROJECT_ITEM_VALUE_FIELDS)
        .replace("__COMMENT__", COMMENT_FIELDS)
        .replace("__ACTOR__", ACTOR_FIELDS)
        .replace("__REACTIONS__", REACTION_FIELDS)
        .replace("__PAGE_INFO__", PAGE_INFO)
        .replace("__RATE_LIMIT__", RATE_LIMIT_FIELDS)
    )


ORGANIZATION_REPOSITORIES = _build(
    """
query OrganizationRepositories($login: String!, $cursor: String, $pageSize: Int!) {
  organization(login: $login) {
    repositories(first: $pageSize, after: $cursor, orderBy: { field: PUSHED_AT, direction: DESC }) {
      __PAGE_INFO__
      nodes {
        __REPOSITORY__
      }
    }
  }
  __RATE_LIMIT__
}
"""
)

REPOSITORY_ISSUES = _build(
    """
query RepositoryIssues($owner: String!, $name: String!, $cursor: String, $since: DateTime, $pageSize: Int!) {
  repository(owner: $owner, name: $name) {
    issues(first: $pageSize, after: $cursor, orderBy: { field: UPDATED_AT, direction: ASC }, filterBy: { since: $since }) {
      __PAGE_INFO__
      nodes {
        __typename
        id
        number
        title
        state
        url
        createdAt
        updatedAt
        closedAt
        author {
          __ACTOR__
        }
        __PROJECT_ITEMS__
        comments(first: 0) {
          totalCount
        }
        __REACTIONS__
      }
    }
  }
  __RATE_LIMIT__
}
"""
)

REPOSITORY_DISCUSSIONS = _build(
    """
query RepositoryDiscussions($owner: String!, $name: String!, $cursor: String, $pageSize: Int!) {
  repository(owner: $owner, name: $name) {
    discussions(first: $pageSize, after: $cursor, orderBy: { field: UPDATED_AT, direction: ASC }) {
      __PAGE_INFO__
      nodes {
        __typename
        id
        number
        title
        url
        createdAt
        updatedAt
        closedAt
        answerChosenAt
        author {
          __ACTOR__
        }
        category {
          id
          name
        }
        comments(first: 0) {
          totalCount
        }
        __REACTIONS__
      }
    }
  }
  __RATE_LIMIT__
}
"""
)

REPOSITORY_PULL_REQUESTS = _build(
    """
query RepositoryPullRequests($owner: String!, $name: String!, $cursor: String, $pageSize: Int!) {
  repository(owner: $owner, name: $name) {
    pullRequests(first: $pageSize, after: $cursor, orderBy: { field: UPDATED_AT, direction: ASC }) {
      __PAGE_INFO__
      nodes {
        id
        number
        title
        state
        url
        createdAt
        updatedAt
        closedAt
        mergedAt
        merged
        isDraft
        author {
          __ACTOR__
        }
        mergedBy {
          __ACTOR__
        }
        timelineItems(last: 100, itemTypes: [REVIEW_REQUESTED_EVENT, REVIEW_REQUEST_REMOVED_EVENT]) {
          nodes {
            __typename
            ... on ReviewRequestedEvent {
              id
              createdAt
              requestedReviewer {
                __ACTOR__
              }
            }
            ... on ReviewRequestRemovedEvent {
              id
              createdAt
              requestedReviewer {
                __ACTOR__
              }
            }
          }
        }
        closingIssuesReferences(first: 10) {
          nodes {
            id
            number
            title
            state
            url
            repository {
              nameWithOwner
            }
          }
        }
        __REACTIONS__
      }
    }
  }
  __RATE_LIMIT__
}
"""
)

ISSUE_COMMENTS = _build(
    """
query IssueComments($owner: String!, $name: String!, $number: Int!, $cursor: String, $pageSize: Int!) {
  repository(owner: $owner, name: $name) {
    issue(number: $number) {
      comments(first: $pageSize, after: $cursor) {
        __PAGE_INFO__
        nodes {
          __COMMENT__
        }
      }
    }
  }
  __RATE_LIMIT__
}
"""
)

DISCUSSION_COMMENTS = _build(
    """
query DiscussionComments($owner: String!, $name: String!, $number: Int!, $cursor: String, $pageSize: Int!) {
  repository(owner: $owner, name: $name) {
    discussion(number: $number) {
      comments(first: $pageSize, after: $cursor) {
        __PAGE_INFO__
        nodes {
          __COMMENT__
        }
      }
    }
  }
  __RATE_LIMIT__
}
"""
)

PULL_REQUEST_COMMENTS = _build(
    """
query PullRequestComments($owner: String!, $name: String!, $number: Int!, $cursor: String, $pageSize: Int!) {
  repository(owner: $owner, name: $name) {
    pullRequest(number: $number) {
      comments(first: $pageSize, after: $cursor) {
        __PAGE_INFO__
        nodes {
          __COMMENT__
        }
      }
    }
  }
  __RATE_LIMIT__
}
"""
)

PULL_REQUEST_REVIEWS = _build(
    """
query PullRequestReviews($owner: String!, $name: String!, $number: Int!, $cursor: String, $pageSize: Int!) {
  repository(owner: $owner, name: $name) {
    pullRequest(number: $number) {
      reviews(first: $pageSize, after: $cursor) {
        __PAGE_INFO__
        nodes {
          id
          author {
            __ACTOR__
          }
          submittedAt
          state
          body
          url
        }
      }
    }
  }
  __RATE_LIMIT__
}
"""
)

PULL_REQUEST_REVIEW_THREADS = _build(
    """
query PullRequestReviewThreads($owner: String!, $name: String!, $number: Int!, $cursor: String) {
  repository(owner: $owner, name: $name) {
    pullRequest(number: $number) {
      reviewThreads(first: 25, after: $cursor) {
        __PAGE_INFO__
        nodes {
          id
          comments(first: 100) {
            nodes {
              __COMMENT__
              pullRequestReview {
                id
              }
            }
          }
        }
      }
    }
  }
  __RATE_LIMIT__
}
"""
)

NODE_DETAILS = _build(
    """
query NodeDetails($ids: [ID!]!) {
  nodes(ids: $ids) {
    __typename
    ... on Issue {
      id
      number
      title
      state
      url
      createdAt
      updatedAt
      closedAt
      author {
        __ACTOR__
      }
      __PROJECT_ITEMS__
      repository {
        __REPOSITORY__
      }
    }
    ... on Discussion {
      id
      number
      title
      url
      createdAt
      updatedAt
      closedAt
      answerChosenAt
      author {
        __ACTOR__
      }
      category {
        id
        name
      }
      repository {
        __REPOSITORY__
      }
    }
  }
  __RATE_LIMIT__
}
"""
)

RESOURCE_BY_URL = _build(
    """
query ResourceByUrl($url: URI!) {
  resource(url: $url) {
    __typename
    ... on Issue {
      id
    }
    ... on Discussion {
      id
    }
  }
  __RATE_LIMIT__
}
"""
)
